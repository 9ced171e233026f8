from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Dict, Optional

from chairbook.models import AvailabilityDay, OpeningHoursDay, Shop
from chairbook.services.errors import ScheduleLookupError

if TYPE_CHECKING:
    from chairbook.services.providers import Provider

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class DayWindow:
    is_available: bool
    window_start: int = 0
    window_end: int = 0

    def contains(self, start: int, duration: int) -> bool:
        if not self.is_available:
            return False
        return self.window_start <= start and start + duration <= self.window_end


CLOSED = DayWindow(is_available=False)


def weekday_name(value: date) -> str:
    return WEEKDAYS[value.weekday()]


def parse_hhmm(value: str) -> int:
    """Parse ``HH:MM`` into minutes since midnight. ``24:00`` closes a day at midnight."""
    try:
        hour_text, minute_text = str(value).strip().split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError) as exc:
        raise ScheduleLookupError(f"Malformed time of day: {value!r}") from exc
    if (hour, minute) == (24, 0):
        return MINUTES_PER_DAY
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ScheduleLookupError(f"Time of day out of range: {value!r}")
    return hour * 60 + minute


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _window(opens: str, closes: str, owner: str) -> DayWindow:
    start = parse_hhmm(opens)
    end = parse_hhmm(closes)
    if end <= start:
        raise ScheduleLookupError(f"{owner} closes ({closes}) before it opens ({opens})")
    return DayWindow(is_available=True, window_start=start, window_end=end)


def shop_day_window(shop: Shop, on_date: date) -> DayWindow:
    hours: Optional[OpeningHoursDay] = shop.opening_hours.get(weekday_name(on_date))
    if hours is None or not hours.is_open:
        return CLOSED
    return _window(hours.open_time, hours.close_time, f"Shop {shop.id}")


def provider_day_window(schedule: Dict[str, AvailabilityDay], on_date: date, provider_id: str) -> DayWindow:
    day: Optional[AvailabilityDay] = schedule.get(weekday_name(on_date))
    if day is None or not day.available:
        return CLOSED
    return _window(day.start, day.end, f"Provider {provider_id}")


class ScheduleSource:
    """Chooses which weekly table governs a booking and reads the day window from it."""

    def window_for(
        self,
        provider: "Provider",
        service_type: str,
        on_date: date,
        shop: Optional[Shop] = None,
    ) -> DayWindow:
        if service_type == "shopBased":
            if shop is None:
                raise ScheduleLookupError(f"Shop-based schedule requested without a shop for {provider.id}")
            return shop_day_window(shop, on_date)
        # Home visits follow the provider's own week, shop owners included.
        return provider_day_window(provider.schedule, on_date, provider.id)

    def excludes(self, provider: "Provider", on_date: date, start: int, duration: int) -> bool:
        """True when the provider's personal week explicitly rules the interval out."""
        day = provider.schedule.get(weekday_name(on_date))
        if day is None:
            return False
        return not provider_day_window(provider.schedule, on_date, provider.id).contains(start, duration)


schedule_source = ScheduleSource()

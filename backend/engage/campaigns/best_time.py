# /engage/campaigns/best_time.py

from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from engage.config.settings import settings
from engage.models.common import ensure_aware
from engage.services.db_service import db_service

EARLIEST_HOUR = 9
LATEST_HOUR = 20
DEFAULT_HOUR = 11


def _peak_hour(times: List[datetime], tz: ZoneInfo) -> Optional[int]:
    if not times:
        return None
    hours = Counter(ensure_aware(t).astimezone(tz).hour for t in times)
    # Ties resolve to the earlier hour.
    return min(hours.items(), key=lambda item: (-item[1], item[0]))[0]


def calculate_best_send_time(
    read_times: List[datetime],
    order_times: List[datetime],
    timezone_name: Optional[str] = None
) -> Dict[str, object]:
    """Blend the peak read hour and the peak order hour into one send hour (local time)."""
    tz = ZoneInfo(timezone_name or settings.scheduler_timezone)
    peaks = [h for h in (_peak_hour(read_times, tz), _peak_hour(order_times, tz)) if h is not None]
    if not peaks:
        return {"hour": DEFAULT_HOUR, "confidence": "low", "samples": 0}

    hour = int(sum(peaks) / len(peaks) + 0.5)
    hour = max(EARLIEST_HOUR, min(LATEST_HOUR, hour))

    samples = len(read_times) + len(order_times)
    if samples >= 20:
        confidence = "high"
    elif samples >= 5:
        confidence = "medium"
    else:
        confidence = "low"
    return {"hour": hour, "confidence": confidence, "samples": samples}


async def get_best_send_time(store_id: str) -> Dict[str, object]:
    read_times = await db_service.get_read_times(store_id)
    order_times = await db_service.get_order_times(store_id)
    return calculate_best_send_time(read_times, order_times)

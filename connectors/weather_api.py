from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Mapping, Sequence

import httpx

from config.settings import Settings
from intents.weather import REGION_COUNTIES
from runtime.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

FORECAST_DATASET = "F-C0032-001"
MODEL_INFO = {"model": "CWA API", "api": "中央氣象署開放資料平台", "provider": "CWA"}

# CWA period times are Taiwan local time.
TAIPEI_TZ = timezone(timedelta(hours=8))
DAY_LABELS = {"today": "目前", "tonight": "今晚", "tomorrow": "明天", "day_after": "後天"}
_DAY_OFFSETS = {"tomorrow": 1, "day_after": 2}


@dataclass(slots=True)
class CityWeather:
    city: str
    weather: str
    min_temp: int | None
    max_temp: int | None
    rain_probability: int | None
    start_time: str = ""

    @property
    def temperature(self) -> str | None:
        if self.min_temp is None or self.max_temp is None:
            return None
        return f"{self.min_temp}～{self.max_temp}"


class WeatherApi:
    """Thin client for the CWA 36-hour county forecast dataset."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self.api_key = settings.cwa_api_key
        self.base_url = settings.cwa_base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=settings.weather_timeout_seconds)

    def fetch_forecast(self, location_name: str | None = None) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("CWA_API_KEY 未設定")

        params = {"Authorization": self.api_key}
        if location_name:
            params["locationName"] = location_name
        try:
            response = self.client.get(f"{self.base_url}/{FORECAST_DATASET}", params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"CWA 請求失敗：{exc}", provider="CWA") from exc
        except ValueError as exc:
            raise UpstreamError("CWA 回傳格式錯誤", provider="CWA") from exc
        if not isinstance(payload, dict):
            raise UpstreamError("CWA 回傳格式錯誤", provider="CWA")
        return payload

    def city_weather(
        self,
        canonical_city: str,
        display: str | None = None,
        day: str = "today",
    ) -> CityWeather | None:
        raw = self.fetch_forecast(canonical_city)
        return format_city_weather(raw, display or canonical_city, day=day)

    def region_summary(self, region: str, day: str = "today") -> str | None:
        return format_region_summary(self.fetch_forecast(), region, day=day)


def _locations(raw: Mapping[str, Any]) -> list[dict[str, Any]]:
    records = raw.get("records")
    if not isinstance(records, Mapping):
        return []
    locations = records.get("location")
    if not isinstance(locations, list):
        return []
    return [item for item in locations if isinstance(item, dict)]


def _period_times(location: Mapping[str, Any]) -> list[Any]:
    elements = location.get("weatherElement") or []
    if not elements or not isinstance(elements[0], Mapping):
        return []
    return list(elements[0].get("time") or [])


def _parameter(location: Mapping[str, Any], element_name: str, index: int = 0) -> str | None:
    for element in location.get("weatherElement") or []:
        if not isinstance(element, Mapping) or element.get("elementName") != element_name:
            continue
        times = element.get("time") or []
        if not times:
            return None
        entry = times[min(index, len(times) - 1)]
        if not isinstance(entry, Mapping):
            return None
        parameter = entry.get("parameter") or {}
        value = parameter.get("parameterName") if isinstance(parameter, Mapping) else None
        return str(value) if value not in (None, "") else None
    return None


def _parse_time(value: object) -> datetime | None:
    try:
        return datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None


def select_period(times: Sequence[Any], day: str, now: datetime | None = None) -> int:
    """Index of the 12-hour forecast period matching the requested day."""
    if day not in ("tonight", *_DAY_OFFSETS) or len(times) <= 1:
        return 0
    current = now or datetime.now(TAIPEI_TZ).replace(tzinfo=None)
    starts = [_parse_time(entry.get("startTime")) if isinstance(entry, Mapping) else None for entry in times]

    if day == "tonight":
        for index, start in enumerate(starts):
            if start is not None and start.date() == current.date() and start.hour >= 18:
                return index
        return 0

    target = current.date() + timedelta(days=_DAY_OFFSETS[day])
    fallback: int | None = None
    for index, start in enumerate(starts):
        if start is None or start.date() != target:
            continue
        if 6 <= start.hour < 18:
            return index
        if fallback is None:
            fallback = index
    # The 36-hour dataset may end before the requested day.
    return fallback if fallback is not None else len(times) - 1


def _as_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def format_city_weather(
    raw: Mapping[str, Any],
    city: str,
    *,
    day: str = "today",
    now: datetime | None = None,
) -> CityWeather | None:
    locations = _locations(raw)
    if not locations:
        logger.warning("CWA payload has no location for %s", city)
        return None
    location = locations[0]
    times = _period_times(location)
    index = select_period(times, day, now)
    period = times[min(index, len(times) - 1)] if times else None
    start_time = str(period.get("startTime", "")) if isinstance(period, Mapping) else ""
    return CityWeather(
        city=city,
        weather=_parameter(location, "Wx", index) or "—",
        min_temp=_as_int(_parameter(location, "MinT", index)),
        max_temp=_as_int(_parameter(location, "MaxT", index)),
        rain_probability=_as_int(_parameter(location, "PoP", index)),
        start_time=start_time,
    )


def format_region_summary(
    raw: Mapping[str, Any],
    region: str,
    *,
    day: str = "today",
    now: datetime | None = None,
) -> str | None:
    locations = _locations(raw)
    if not locations:
        return None
    if region == "全台":
        wanted = locations
    else:
        counties = REGION_COUNTIES.get(region, ())
        wanted = [loc for loc in locations if loc.get("locationName") in counties]
    if not wanted:
        return None

    lines = []
    for loc in wanted:
        index = select_period(_period_times(loc), day, now)
        wx = _parameter(loc, "Wx", index) or "N/A"
        min_t = _parameter(loc, "MinT", index)
        max_t = _parameter(loc, "MaxT", index)
        pop = _parameter(loc, "PoP", index)
        temp = f"{min_t}～{max_t}°C" if min_t and max_t else "N/A"
        rain = f"{pop}%" if pop else "N/A"
        lines.append(f"{loc.get('locationName')}：{wx}，{temp}，降雨 {rain}")
    return "\n".join(lines)


def build_weather_reply(city: str, weather: CityWeather, day: str = "today") -> str:
    temp = weather.temperature
    rain = weather.rain_probability
    return "\n".join(
        [
            f"這是{DAY_LABELS.get(day, '目前')}【{city}】的天氣 ☀️",
            "",
            f"🌤 天氣：{weather.weather}",
            f"🌡 氣溫：{temp}°C" if temp else "🌡 氣溫：N/A",
            f"🌧 降雨機率：{rain}%" if rain is not None else "🌧 降雨機率：N/A",
        ]
    )

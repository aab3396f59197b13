from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

WEATHER_API_URL = "http://api.weatherapi.com/v1/current.json"


class WeatherError(RuntimeError):
    """Raised when the weather service cannot answer."""


@dataclass(frozen=True)
class WeatherReading:
    location: str
    condition: Optional[str]
    temp_c: Optional[float]
    feels_like_c: Optional[float]
    humidity_pct: Optional[float]
    wind_kph: Optional[float]
    url: str

    def summary(self) -> str:
        def show(value: Any) -> str:
            return "?" if value is None else str(value)

        return (
            f"Weather for {self.location}: {self.condition or 'n/a'}, temp {show(self.temp_c)}°C, "
            f"feels {show(self.feels_like_c)}°C, humidity {show(self.humidity_pct)}%, "
            f"wind {show(self.wind_kph)} kph."
        )


class WeatherClient:
    """Current conditions from WeatherAPI.com."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = WEATHER_API_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def current(self, location: str) -> WeatherReading:
        params = {"key": self.api_key, "q": location}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(self.base_url, params=params)
        except httpx.HTTPError as exc:
            raise WeatherError(f"Weather error: {exc}") from exc
        if resp.status_code >= 400:
            raise WeatherError(f"Weather fetch error: {resp.status_code}")
        try:
            data: Dict[str, Any] = resp.json()
        except ValueError as exc:
            raise WeatherError("Weather error: malformed response") from exc

        current = data.get("current") or {}
        condition = current.get("condition") or {}
        # The key never leaves this client.
        public_url = str(resp.request.url.copy_remove_param("key"))
        return WeatherReading(
            location=(data.get("location") or {}).get("name") or location,
            condition=condition.get("text"),
            temp_c=current.get("temp_c"),
            feels_like_c=current.get("feelslike_c"),
            humidity_pct=current.get("humidity"),
            wind_kph=current.get("wind_kph"),
            url=public_url,
        )

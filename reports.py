"""Vehicle report production and the shared report cache.

The report producer is an external collaborator: the session layer never
calls it directly, only the MCP tools do. The cache is shared by every
session and pruned by the sweeper.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ReportUnavailable(Exception):
    """The upstream data source could not produce a report."""


class ReportProducer(Protocol):
    async def produce(self, vin: str) -> dict:
        ...


class ReportCache:
    """LRU cache with a per-entry TTL."""

    def __init__(self, max_entries: int = 1000, ttl: float = 3600, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (value, self._clock() + self.ttl)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def prune(self) -> int:
        now = self._clock()
        stale = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


def _value(result: dict, key: str) -> Optional[str]:
    value = result.get(key)
    if value in (None, "", "Not Applicable"):
        return None
    return str(value).strip()


class NhtsaReportProducer:
    """Decodes a VIN with the NHTSA vPIC ``DecodeVinValues`` API."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def produce(self, vin: str) -> dict:
        url = f"{self.base_url}/DecodeVinValues/{vin}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params={"format": "json"})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[REPORT] NHTSA decode failed for {vin}: {e}")
            raise ReportUnavailable("NHTSA decode failed") from e

        results = data.get("Results") or []
        if not results:
            raise ReportUnavailable("NHTSA returned no results")
        result = results[0]

        year = _value(result, "ModelYear")
        return {
            "vin": vin,
            "vehicle": {
                "year": int(year) if year and year.isdigit() else None,
                "make": _value(result, "Make"),
                "model": _value(result, "Model"),
                "trim": _value(result, "Trim"),
                "body_class": _value(result, "BodyClass"),
            },
            "engine": {
                "cylinders": _value(result, "EngineCylinders"),
                "displacement_l": _value(result, "DisplacementL"),
                "horsepower": _value(result, "EngineHP"),
                "fuel_type": _value(result, "FuelTypePrimary"),
            },
            "plant": {
                "city": _value(result, "PlantCity"),
                "state": _value(result, "PlantState"),
                "country": _value(result, "PlantCountry"),
            },
            "decoder_messages": _value(result, "ErrorText"),
        }


def normalize_vin(vin: str) -> str:
    return (vin or "").strip().upper()


class ReportService:
    """Serves reports from the shared cache, falling back to the producer."""

    def __init__(self, producer: ReportProducer, cache: ReportCache):
        self.producer = producer
        self.cache = cache

    async def report(self, vin: str) -> dict:
        vin = normalize_vin(vin)
        cached = self.cache.get(vin)
        if cached is not None:
            return cached

        report = await self.producer.produce(vin)
        self.cache.set(vin, report)
        return report

"""
Keitaro admin API integration (attribution lookups and bulk conversion reports).

All calls go through ``_request`` which applies the circuit breaker and a bounded
exponential-backoff retry. Not-found is a normal outcome (``lookup`` returns
``None``); only transport failures surface as ``AttributionLookupError``.
"""
import asyncio
import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import aiohttp

from postback_relay.config import (
    BACKOFF_POLICY,
    KEITARO_API_KEY,
    KEITARO_BASE_URL,
    KEITARO_MAX_ROWS,
    KEITARO_PAGE_SIZE,
    KEITARO_REPORT_TIMEZONE,
    KEITARO_TIMEOUT_SECONDS,
    STATUS_KEYWORDS,
)
from postback_relay.exceptions import AttributionLookupError
from postback_relay.models.schemas.attribution import ConversionRecord, TrafficSource
from postback_relay.utils import get_logger
from postback_relay.utils.backoff import compute_backoff_seconds
from postback_relay.utils.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

CONVERSIONS_LOG_PATH = "/admin_api/v1/conversions/log"
TRAFFIC_SOURCES_PATH = "/admin_api/v1/traffic_sources"

CONVERSION_COLUMNS = [
    "sub_id",
    "sub_id_1",
    "sub_id_2",
    "sub_id_3",
    "sub_id_4",
    "sub_id_5",
    "ts_id",
    "traffic_source_name",
    "country",
    "status",
    "revenue",
    "campaign",
    "offer",
    "click_id",
    "postback_datetime",
]

RETRYABLE_STATUSES = {429}

SessionFactory = Callable[[], Any]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _float_or_zero(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _is_deposit_status(status: Optional[str]) -> bool:
    s = (status or "").lower()
    return s == "sale" or "dep" in s or s in {"confirmed", "approved"}


class KeitaroClient:
    """Attribution client for the Keitaro tracking platform."""

    UPSTREAM = "keitaro"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout_seconds: Optional[float] = None,
        page_size: Optional[int] = None,
        max_rows: Optional[int] = None,
        report_timezone: Optional[str] = None,
        max_attempts: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        session_factory: Optional[SessionFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or KEITARO_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else KEITARO_API_KEY
        self.timeout_seconds = float(timeout_seconds or KEITARO_TIMEOUT_SECONDS)
        self.page_size = int(page_size or KEITARO_PAGE_SIZE)
        self.max_rows = int(max_rows or KEITARO_MAX_ROWS)
        self.report_timezone = report_timezone or KEITARO_REPORT_TIMEZONE
        self.max_attempts = int(max_attempts or BACKOFF_POLICY["max_attempts"])
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._session_factory = session_factory or self._default_session
        self._sleep = sleep
        if not self.api_key:
            logger.warning("Keitaro API key not configured; lookups will be rejected", base_url=self.base_url)

    def _default_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds))

    def _headers(self) -> Dict[str, str]:
        return {
            "Api-Key": self.api_key or "",
            "Content-Type": "application/json",
            "User-Agent": "postback-relay/1.0",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        allow, reason = self.circuit_breaker.allow_call(self.UPSTREAM)
        if not allow:
            logger.warning("Keitaro call skipped due to circuit breaker", path=path, reason=reason)
            raise AttributionLookupError("Tracking platform circuit open", attempts=0, reason="circuit_open")

        url = f"{self.base_url}{path}"
        limit = int(max_attempts or self.max_attempts)
        attempts = 0
        last_status: Optional[int] = None
        last_error: Optional[str] = None

        while attempts < limit:
            attempts += 1
            try:
                async with self._session_factory() as session:
                    async with session.request(method, url, json=payload, params=params, headers=self._headers()) as response:
                        status = response.status
                        if status < 400:
                            data = await response.json(content_type=None)
                            self.circuit_breaker.record_success(self.UPSTREAM)
                            return data
                        body = await response.text()
                last_status = status
                last_error = f"HTTP {status}: {body[:200]}"
                self.circuit_breaker.record_failure(self.UPSTREAM)
                if status < 500 and status not in RETRYABLE_STATUSES:
                    logger.error("Keitaro request rejected", path=path, status_code=status, body=body[:200])
                    raise AttributionLookupError(
                        f"Tracking platform rejected request: {last_error}",
                        attempts=attempts,
                        status=status,
                        reason="http_error",
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_status = None
                last_error = f"{type(e).__name__}: {e}"
                self.circuit_breaker.record_failure(self.UPSTREAM)
            except ValueError as e:
                # Body was not JSON
                self.circuit_breaker.record_failure(self.UPSTREAM)
                raise AttributionLookupError(
                    f"Tracking platform returned invalid JSON: {e}",
                    attempts=attempts,
                    reason="invalid_response",
                ) from e

            if attempts >= limit:
                break
            backoff = compute_backoff_seconds(attempts)
            logger.warning(
                "Keitaro request retry scheduled",
                path=path,
                attempt=attempts,
                backoff_seconds=round(backoff, 2),
                status_code=last_status,
                error=last_error,
            )
            await self._sleep(backoff)

        logger.error("Keitaro request failed after retries", path=path, attempts=attempts, status_code=last_status, error=last_error)
        raise AttributionLookupError(
            f"Tracking platform unavailable after {attempts} attempts: {last_error}",
            attempts=attempts,
            status=last_status,
            reason="retries_exhausted",
        )

    @staticmethod
    def _extract_rows(data: Any) -> List[Dict[str, Any]]:
        if isinstance(data, list):
            return [r for r in data if isinstance(r, dict)]
        if isinstance(data, dict):
            rows = data.get("rows") or data.get("conversions") or []
            return [r for r in rows if isinstance(r, dict)]
        return []

    def _parse_timestamp(self, value: Any) -> Optional[datetime]:
        raw = _text(value)
        if raw is None:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable postback_datetime", value=raw)
            return None
        if parsed.tzinfo is None:
            # Report rows are rendered in the report timezone
            parsed = parsed.replace(tzinfo=ZoneInfo(self.report_timezone))
        return parsed.astimezone(timezone.utc)

    def to_record(self, row: Dict[str, Any]) -> ConversionRecord:
        """Normalise one conversions/log row; missing fields become None."""
        return ConversionRecord(
            identifier=_text(row.get("sub_id") or row.get("subid") or row.get("click_id")),
            sub_id_1=_text(row.get("sub_id_1")),
            sub_id_2=_text(row.get("sub_id_2")),
            sub_id_3=_text(row.get("sub_id_3")),
            sub_id_4=_text(row.get("sub_id_4")),
            sub_id_5=_text(row.get("sub_id_5")),
            channel_id=_int_or_none(row.get("ts_id", row.get("traffic_source_id"))),
            channel_name=_text(row.get("traffic_source_name") or row.get("ts")),
            country_code=_text(row.get("country") or row.get("country_code")),
            revenue=_float_or_zero(row.get("revenue")),
            campaign_name=_text(row.get("campaign") or row.get("campaign_name")),
            offer_name=_text(row.get("offer") or row.get("offer_name")),
            status=_text(row.get("status")),
            event_timestamp=self._parse_timestamp(row.get("postback_datetime") or row.get("datetime")),
        )

    async def lookup(self, identifier: str) -> Optional[ConversionRecord]:
        """Return the conversion recorded for ``identifier`` or None if not indexed yet."""
        payload = {
            "limit": 1,
            "columns": CONVERSION_COLUMNS,
            "filters": [{"name": "sub_id", "operator": "EQUALS", "expression": identifier}],
        }
        data = await self._request("POST", CONVERSIONS_LOG_PATH, payload=payload)
        rows = self._extract_rows(data)
        if not rows:
            logger.info("Conversion not found in Keitaro", identifier=identifier)
            return None
        record = self.to_record(rows[0])
        logger.info(
            "Conversion found in Keitaro",
            identifier=identifier,
            channel_id=record.channel_id,
            status=record.status,
        )
        return record

    async def list_for_period(self, date_from: date, date_to: date) -> List[ConversionRecord]:
        """All deposit-bearing conversions between two dates (inclusive), paged."""
        records: List[ConversionRecord] = []
        offset = 0
        fetched = 0
        while fetched < self.max_rows:
            limit = min(self.page_size, self.max_rows - fetched)
            payload = {
                "range": {
                    "from": date_from.isoformat(),
                    "to": date_to.isoformat(),
                    "timezone": self.report_timezone,
                },
                "columns": CONVERSION_COLUMNS,
                "filters": [
                    {"name": "status", "operator": "IN_LIST", "expression": list(STATUS_KEYWORDS["monetization"])}
                ],
                "sort": [{"name": "postback_datetime", "order": "DESC"}],
                "limit": limit,
                "offset": offset,
            }
            data = await self._request("POST", CONVERSIONS_LOG_PATH, payload=payload)
            rows = self._extract_rows(data)
            fetched += len(rows)
            records.extend(self.to_record(r) for r in rows if _is_deposit_status(_text(r.get("status"))))
            if len(rows) < limit:
                break
            offset += len(rows)
        else:
            logger.warning("Keitaro result cap reached", max_rows=self.max_rows, date_from=str(date_from), date_to=str(date_to))

        logger.info(
            "Keitaro conversions fetched for period",
            date_from=str(date_from),
            date_to=str(date_to),
            rows=fetched,
            deposits=len(records),
        )
        return records

    async def get_traffic_sources(self) -> List[TrafficSource]:
        data = await self._request("GET", TRAFFIC_SOURCES_PATH)
        sources: List[TrafficSource] = []
        for item in data if isinstance(data, list) else []:
            source_id = _int_or_none(item.get("id"))
            if source_id is None:
                continue
            sources.append(TrafficSource(id=source_id, name=_text(item.get("name")) or f"Traffic Source {source_id}", state=_text(item.get("state"))))
        logger.info("Traffic sources retrieved", count=len(sources))
        return sources

    async def check_health(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            await self._request("GET", TRAFFIC_SOURCES_PATH, params={"limit": 1}, max_attempts=1)
        except AttributionLookupError as e:
            logger.warning("Keitaro health check failed", error=str(e), reason=e.reason)
            return {"healthy": False, "error": str(e), "reason": e.reason}
        return {"healthy": True, "response_time_ms": round((time.perf_counter() - started) * 1000, 2)}


__all__ = ["KeitaroClient", "CONVERSION_COLUMNS", "CONVERSIONS_LOG_PATH", "TRAFFIC_SOURCES_PATH"]

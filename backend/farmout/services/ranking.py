"""Driver candidate ranking.

``LocalRanker`` scores the driver directory in process. ``RemoteRanker`` asks an
external ranking function over HTTP and ``FallbackRanker`` prefers the remote one
while falling back to local ranking on any failure. All three return candidates
in the same order for the same input: score desc, rating desc (when rating
priority is on), display name, then driver id.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

import httpx

from farmout.core.config import Settings, get_settings
from farmout.core.logging import logger
from farmout.models.dispatch import Candidate, Driver, Reservation
from farmout.models.settings import DispatchSettings
from farmout.services.exceptions import RankingUnavailableError


RATING_WEIGHT = 1000
SERVICE_AREA_BONUS = 500
VEHICLE_TYPE_BONUS = 300
ON_DEMAND_BONUS = 100
DEFAULT_RATING = 5

_CLOCK_TIME = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$")


def extract_city(address: str | None) -> str:
    """City portion of a comma-separated address.

    ``"123 Main St, Chicago, IL 60601"`` gives ``"Chicago"``; a single-part
    address is returned as-is.
    """
    parts = [part.strip() for part in str(address or "").split(",") if part.strip()]
    if len(parts) >= 2:
        return parts[-2]
    return parts[0] if parts else ""


def _parse_date(value: str) -> Optional[date]:
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in ("%m/%d/%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _parse_clock(value: str) -> Optional[time]:
    match = _CLOCK_TIME.match(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    meridiem = (match.group(4) or "").lower()
    if meridiem:
        if hour < 1 or hour > 12:
            return None
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute, int(match.group(3) or 0))


def pickup_datetime(reservation: Reservation, tz: tzinfo) -> Optional[datetime]:
    """Pickup moment in UTC, reading date and time in the dispatch timezone."""
    raw_date = (reservation.pickup_date or "").strip()
    if not raw_date:
        return None
    if "T" in raw_date:
        try:
            parsed = datetime.fromisoformat(raw_date.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=tz)
            return parsed.astimezone(timezone.utc)
    pickup_date = _parse_date(raw_date)
    if pickup_date is None:
        return None
    clock = _parse_clock(reservation.pickup_time or "") or time(0, 0)
    return datetime.combine(pickup_date, clock, tzinfo=tz).astimezone(timezone.utc)


def is_on_demand(reservation: Reservation, settings: DispatchSettings, now: datetime, tz: tzinfo) -> bool:
    pickup = pickup_datetime(reservation, tz)
    if pickup is None:
        return False
    return pickup - now <= timedelta(minutes=settings.on_demand_threshold_minutes)


def driver_rating(value: Any) -> int:
    """Rating clamped to 1-10; missing or invalid ratings count as 5."""
    try:
        rating = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_RATING
    return max(1, min(10, rating))


def contact_address(driver: Driver) -> Optional[str]:
    phone = (driver.phone or "").strip()
    if phone:
        return phone
    email = (driver.email or "").strip()
    return email or None


def last_offer_at(driver: Driver, cooldown_ledger: Mapping[str, datetime]) -> Optional[datetime]:
    moments = [moment for moment in (cooldown_ledger.get(driver.id), driver.last_farmout_offer_at) if moment]
    if not moments:
        return None
    return max(moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc) for moment in moments)


def in_cooldown(
    driver: Driver,
    cooldown_ledger: Mapping[str, datetime],
    settings: DispatchSettings,
    now: datetime,
) -> bool:
    last = last_offer_at(driver, cooldown_ledger)
    if last is None:
        return False
    return now - last < timedelta(hours=settings.driver_cooldown_hours)


def _matches_service_area(driver: Driver, pickup_city: str) -> bool:
    city = pickup_city.strip().lower()
    if not city:
        return False
    for area in driver.service_areas:
        text = str(area or "").strip().lower()
        if text and (text in city or city in text):
            return True
    return False


def _matches_vehicle_type(driver: Driver, vehicle_type: str) -> bool:
    wanted = vehicle_type.strip().lower()
    if not wanted:
        return False
    return any(str(kind or "").strip().lower() == wanted for kind in driver.preferred_vehicle_types)


def sort_candidates(candidates: Iterable[Candidate], settings: DispatchSettings) -> List[Candidate]:
    rating_priority = settings.enable_driver_rating_priority
    return sorted(
        candidates,
        key=lambda c: (
            -c.priority_score,
            -c.rating if rating_priority else 0,
            c.name.casefold(),
            c.driver_id,
        ),
    )


class CandidateRanker(Protocol):
    # True when rank() performs network I/O and must run off the event loop.
    blocking: bool

    def rank(
        self,
        reservation: Reservation,
        drivers: List[Driver],
        cooldown_ledger: Mapping[str, datetime],
        settings: DispatchSettings,
        now: datetime,
    ) -> List[Candidate]:
        ...


class LocalRanker:
    """Score the driver directory in process."""

    blocking = False

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self.tz = tz or timezone.utc

    def rank(
        self,
        reservation: Reservation,
        drivers: List[Driver],
        cooldown_ledger: Mapping[str, datetime],
        settings: DispatchSettings,
        now: datetime,
    ) -> List[Candidate]:
        pickup_city = extract_city(reservation.pickup_location)
        on_demand = is_on_demand(reservation, settings, now, self.tz)
        required_affiliate = (reservation.affiliate_id or "").strip()

        candidates: List[Candidate] = []
        for driver in drivers:
            if not driver.active:
                continue
            driver_affiliate = (driver.affiliate_id or "").strip()
            if required_affiliate and driver_affiliate and driver_affiliate != required_affiliate:
                continue
            if in_cooldown(driver, cooldown_ledger, settings, now):
                continue
            address = contact_address(driver)
            if address is None and not settings.enable_in_app_offers:
                continue

            rating = driver_rating(driver.rating)
            area_match = _matches_service_area(driver, pickup_city)
            vehicle_match = _matches_vehicle_type(driver, reservation.vehicle_type)

            score = 0
            if settings.enable_driver_rating_priority:
                score += rating * RATING_WEIGHT
            if settings.enable_service_area_matching and area_match:
                score += SERVICE_AREA_BONUS
            if settings.enable_vehicle_type_matching and vehicle_match:
                score += VEHICLE_TYPE_BONUS
            if on_demand and settings.enable_on_demand_priority and driver.available:
                score += ON_DEMAND_BONUS

            candidates.append(
                Candidate(
                    driver_id=driver.id,
                    name=driver.display_name,
                    contact_address=address,
                    priority_score=score,
                    rating=rating,
                    is_available=driver.available,
                    matches_service_area=area_match,
                    matches_vehicle_type=vehicle_match,
                )
            )
        return sort_candidates(candidates, settings)


class RemoteRanker:
    """Delegate ranking to the external ranking function."""

    blocking = True

    def __init__(self, settings: Optional[Settings] = None, tz: Optional[tzinfo] = None) -> None:
        self.settings = settings or get_settings()
        self.tz = tz or timezone.utc

    def _fetch_rows(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = (self.settings.ranking_service_url or "").strip()
        if not url:
            raise RankingUnavailableError("Remote ranking requires RANKING_SERVICE_URL.")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = (self.settings.ranking_api_token or "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            with httpx.Client(timeout=self.settings.ranking_timeout_seconds) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except Exception as exc:
            raise RankingUnavailableError(f"Remote ranking request failed: {exc}") from exc

        rows = body.get("drivers") if isinstance(body, dict) else body
        if not isinstance(rows, list):
            raise RankingUnavailableError("Invalid ranking response: expected a list of drivers.")
        return rows

    def rank(
        self,
        reservation: Reservation,
        drivers: List[Driver],
        cooldown_ledger: Mapping[str, datetime],
        settings: DispatchSettings,
        now: datetime,
    ) -> List[Candidate]:
        payload = {
            "reservation_id": reservation.id,
            "pickup_city": extract_city(reservation.pickup_location),
            "vehicle_type": reservation.vehicle_type,
            "is_on_demand": is_on_demand(reservation, settings, now, self.tz),
            "affiliate_id": reservation.affiliate_id,
        }
        rows = self._fetch_rows(payload)
        known = {driver.id: driver for driver in drivers}

        candidates: List[Candidate] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            driver_id = str(row.get("driver_id") or "").strip()
            if not driver_id:
                continue
            driver = known.get(driver_id)
            if driver is not None and in_cooldown(driver, cooldown_ledger, settings, now):
                continue
            if driver is None and driver_id in cooldown_ledger:
                if now - cooldown_ledger[driver_id] < timedelta(hours=settings.driver_cooldown_hours):
                    continue
            address = (str(row.get("driver_phone") or "").strip() or None) if driver is None else contact_address(driver)
            if address is None and not settings.enable_in_app_offers:
                continue
            try:
                score = int(float(row.get("priority_score") or 0))
            except (TypeError, ValueError):
                score = 0
            candidates.append(
                Candidate(
                    driver_id=driver_id,
                    name=str(row.get("driver_name") or (driver.display_name if driver else "Driver")),
                    contact_address=address,
                    priority_score=score,
                    rating=driver_rating(row.get("driver_rating")),
                    is_available=bool(row.get("is_available")),
                    matches_service_area=bool(row.get("matches_service_area")),
                    matches_vehicle_type=bool(row.get("matches_vehicle_type")),
                )
            )
        if not candidates:
            raise RankingUnavailableError("Remote ranking returned no usable drivers.")
        return sort_candidates(candidates, settings)


class FallbackRanker:
    """Prefer the remote ranker; use local ranking whenever it is unavailable."""

    def __init__(self, local: LocalRanker, remote: Optional[CandidateRanker] = None) -> None:
        self.local = local
        self.remote = remote

    @property
    def blocking(self) -> bool:
        return bool(getattr(self.remote, "blocking", False))

    def rank(
        self,
        reservation: Reservation,
        drivers: List[Driver],
        cooldown_ledger: Mapping[str, datetime],
        settings: DispatchSettings,
        now: datetime,
    ) -> List[Candidate]:
        if self.remote is not None:
            try:
                return self.remote.rank(reservation, drivers, cooldown_ledger, settings, now)
            except Exception as exc:
                logger.warning(
                    "Remote ranking unavailable, using local ranking",
                    reservation_id=reservation.id,
                    error=str(exc),
                )
        return self.local.rank(reservation, drivers, cooldown_ledger, settings, now)


def build_ranker(settings: Optional[Settings] = None, tz: Optional[tzinfo] = None) -> CandidateRanker:
    settings = settings or get_settings()
    tz = tz or settings.resolved_timezone()
    remote = RemoteRanker(settings, tz) if settings.remote_ranking_enabled() else None
    return FallbackRanker(LocalRanker(tz), remote)

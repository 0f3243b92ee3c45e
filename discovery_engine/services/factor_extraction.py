"""
Factor Extraction

Turns a user's journal events into a flat, ordered stream of factor
observations. Every signal present on an event (food mentioned in the note,
bucketed weather and physiology readings, explicit trigger and medication tags,
the event kind, and for flares the time of day, location and symptom pairs)
becomes one observation tagged with whether a flare followed within the
lookahead window.

Duplicates across events are intentional: counting happens downstream in the
occurrence aggregator.

Key Features:
- Outcome lookahead via binary search over flare timestamps
- Fixed bucket discretization for weather and physiology readings
- Pluggable free-text food extraction (FoodExtractor protocol)
- Per-signal tolerance of malformed readings
"""

import logging
import math
import re
from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from discovery_engine.config import LOOKAHEAD_WINDOW_HOURS
from discovery_engine.models.event import HealthEvent

logger = logging.getLogger(__name__)

# Key prefix -> discovery category
CATEGORY_BY_PREFIX = {
    "food": "food",
    "weather": "weather",
    "physio": "physiological",
    "time": "time",
    "location": "location",
    "trigger": "lifestyle",
    "medication": "medication",
    "activity": "activity",
    "symptom_pair": "pattern",
}


@dataclass(frozen=True)
class FactorObservation:
    """One factor seen on one event"""
    factor_key: str
    category: str
    event_id: str
    occurred_at: datetime
    had_outcome: bool
    severity_of_outcome: Optional[str] = None
    delay_hours: Optional[float] = None

    @property
    def factor_name(self) -> str:
        """Key without its prefix, e.g. 'temperature:cold' for 'weather:temperature:cold'"""
        return self.factor_key.split(":", 1)[1]


@dataclass(frozen=True)
class Outcome:
    """The flare an event is attributed to"""
    event_id: str
    severity: Optional[str]
    delay_hours: float


# ================================================================
# Free-text food extraction
# ================================================================

class FoodExtractor(Protocol):
    """Strategy for pulling food candidates out of a free-text note"""

    def extract(self, text: str) -> List[str]:
        ...


class PhraseFoodExtractor:
    """
    Regex-based food extraction.

    Recognizes consumption phrases ("ate X", "had X", "drank X", ...) and meal
    phrases ("X for breakfast"). False positives such as "had a headache" are
    accepted; statistical filtering removes factors that carry no signal.

    Example:
        >>> PhraseFoodExtractor().extract("Had eggs for breakfast, drank coffee.")
        ['eggs', 'coffee']
    """

    CONSUMPTION_PATTERN = re.compile(
        r"\b(?:ate|eating|had|having|consumed|drank|drinking)\s+([^.,;:!?\n]+)",
        re.IGNORECASE
    )
    MEAL_PATTERN = re.compile(
        r"((?:[\w'-]+\s+){0,2}[\w'-]+)\s+for\s+(?:breakfast|brunch|lunch|dinner|supper)\b",
        re.IGNORECASE
    )
    MEAL_SUFFIX = re.compile(r"\s+for\s+(?:breakfast|brunch|lunch|dinner|supper)\b.*$")
    CLAUSE_BREAK = re.compile(r"\s+(?:then|before|after|because|but|so|while|when|which)\b.*$")
    TOKEN_PATTERN = re.compile(r"[a-z0-9][a-z0-9'-]*")

    STOP_WORDS = frozenset({
        "a", "an", "the", "some", "my", "our", "i", "we", "me", "it", "this", "that",
        "of", "and", "or", "with", "too", "much", "many", "more", "lots", "lot",
        "bit", "little", "few", "just", "also", "really", "very", "again", "only",
        "ate", "eating", "had", "having", "consumed", "drank", "drinking",
        "today", "tonight", "yesterday", "morning", "afternoon", "evening", "night",
    })

    MIN_LENGTH = 2
    MAX_LENGTH = 30

    def extract(self, text: str) -> List[str]:
        candidates = [m.group(1) for m in self.CONSUMPTION_PATTERN.finditer(text)]
        candidates.extend(m.group(1) for m in self.MEAL_PATTERN.finditer(text))

        foods: List[str] = []
        for candidate in candidates:
            phrase = self._clean(candidate)
            if phrase and phrase not in foods:
                foods.append(phrase)
        return foods

    def _clean(self, candidate: str) -> Optional[str]:
        phrase = self.MEAL_SUFFIX.sub("", candidate.lower())
        phrase = self.CLAUSE_BREAK.sub("", phrase)
        tokens = [t for t in self.TOKEN_PATTERN.findall(phrase) if t not in self.STOP_WORDS]
        phrase = " ".join(tokens)
        if self.MIN_LENGTH <= len(phrase) <= self.MAX_LENGTH:
            return phrase
        return None


# ================================================================
# Bucketing
# ================================================================

def _as_number(value: Any) -> float:
    """Coerce a reading to float, rejecting booleans and NaN"""
    if isinstance(value, bool):
        raise TypeError("boolean is not a reading")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"non-finite reading: {value!r}")
    return number


def bucket_temperature(fahrenheit: float) -> str:
    if fahrenheit < 32:
        return "freezing"
    if fahrenheit < 50:
        return "cold"
    if fahrenheit < 68:
        return "cool"
    if fahrenheit < 85:
        return "warm"
    return "hot"


def bucket_humidity(percent: float) -> str:
    if percent < 30:
        return "low"
    if percent < 60:
        return "moderate"
    return "high"


def bucket_pressure(millibars: float) -> str:
    if millibars < 1005:
        return "low"
    if millibars < 1020:
        return "normal"
    return "high"


def bucket_air_quality(aqi: float) -> str:
    if aqi <= 50:
        return "good"
    if aqi <= 100:
        return "moderate"
    return "poor"


def bucket_heart_rate(bpm: float) -> str:
    if bpm < 60:
        return "low"
    if bpm < 80:
        return "normal"
    if bpm < 100:
        return "elevated"
    return "high"


def bucket_hrv(ms: float) -> str:
    if ms < 20:
        return "very_low"
    if ms < 40:
        return "low"
    if ms < 60:
        return "moderate"
    return "high"


def bucket_sleep(hours: float) -> str:
    if hours < 5:
        return "very_poor"
    if hours < 6:
        return "poor"
    if hours < 7:
        return "fair"
    if hours < 9:
        return "good"
    return "oversleep"


def bucket_steps(steps: float) -> str:
    if steps < 3000:
        return "sedentary"
    if steps < 7000:
        return "light"
    if steps < 10000:
        return "moderate"
    return "high"


def bucket_spo2(percent: float) -> str:
    return "low" if percent < 94 else "normal"


POLLEN_HIGH_THRESHOLD = 50


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _bucket_into(
    buckets: Dict[str, str],
    field: str,
    raw: Any,
    bucketer: Callable[[float], str]
) -> None:
    """Bucket one reading, skipping it (and only it) when malformed"""
    if raw is None:
        return
    try:
        buckets[field] = bucketer(_as_number(raw))
    except (TypeError, ValueError):
        logger.debug(f"Skipping malformed {field} reading: {raw!r}")


def weather_buckets(environment: Dict[str, Any]) -> Dict[str, str]:
    """
    Discretize environmental context into named buckets.

    Args:
        environment: Raw environment mapping with optional 'weather',
                     'air_quality' (or 'airQuality') and 'pollen' entries

    Returns:
        Mapping of field -> bucket, e.g. {"temperature": "cold", "condition": "rain"}
    """
    buckets: Dict[str, str] = {}

    weather = environment.get("weather")
    if isinstance(weather, dict):
        _bucket_into(buckets, "temperature", weather.get("temperature"), bucket_temperature)
        _bucket_into(buckets, "humidity", weather.get("humidity"), bucket_humidity)
        _bucket_into(buckets, "pressure", weather.get("pressure"), bucket_pressure)
        condition = weather.get("condition")
        if isinstance(condition, str) and condition.strip():
            buckets["condition"] = condition.strip().lower()

    air_quality = _first_present(environment, "air_quality", "airQuality")
    if isinstance(air_quality, dict):
        aqi = _first_present(air_quality, "overall_aqi", "us_aqi", "european_aqi")
        _bucket_into(buckets, "aqi", aqi, bucket_air_quality)

    pollen = environment.get("pollen")
    if isinstance(pollen, dict):
        for field in ("grass_pollen", "tree_pollen"):
            raw = pollen.get(field)
            if raw is None:
                continue
            try:
                if _as_number(raw) > POLLEN_HIGH_THRESHOLD:
                    buckets[f"pollen_{field.split('_')[0]}"] = "high"
            except (TypeError, ValueError):
                logger.debug(f"Skipping malformed {field} reading: {raw!r}")

    return buckets


def physiology_buckets(physiology: Dict[str, Any]) -> Dict[str, str]:
    """
    Discretize wearable readings into named buckets.

    Accepts both snake_case keys and the camelCase keys wearables send
    (heartRate, hrvRmssd, sleepDuration, sleep.totalMinutes).
    """
    buckets: Dict[str, str] = {}

    _bucket_into(buckets, "heart_rate", _first_present(physiology, "heart_rate", "heartRate"), bucket_heart_rate)
    _bucket_into(buckets, "hrv", _first_present(physiology, "hrv", "hrvRmssd", "hrv_rmssd"), bucket_hrv)

    sleep_hours = _first_present(physiology, "sleep_hours", "sleepDuration", "sleep_duration")
    if sleep_hours is None:
        sleep = physiology.get("sleep")
        if isinstance(sleep, dict) and sleep.get("totalMinutes") is not None:
            try:
                sleep_hours = _as_number(sleep["totalMinutes"]) / 60
            except (TypeError, ValueError):
                logger.debug(f"Skipping malformed sleep reading: {sleep!r}")
    _bucket_into(buckets, "sleep", sleep_hours, bucket_sleep)

    _bucket_into(buckets, "steps", physiology.get("steps"), bucket_steps)
    _bucket_into(buckets, "spo2", _first_present(physiology, "spo2", "spO2"), bucket_spo2)

    return buckets


def time_of_day(moment: datetime, tz: tzinfo) -> str:
    hour = moment.astimezone(tz).hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def day_of_week(moment: datetime, tz: tzinfo) -> str:
    return moment.astimezone(tz).strftime("%A").lower()


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA timezone name, falling back to UTC"""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return timezone.utc


def symptom_pairs(symptoms: Sequence[str]) -> List[str]:
    """Every unordered pair of distinct symptoms, case-insensitive and sorted"""
    distinct = sorted({s.strip().lower() for s in symptoms if s.strip()})
    return [f"{a} + {b}" for a, b in combinations(distinct, 2)]


def _normalize(value: str) -> str:
    return " ".join(value.lower().split())


# ================================================================
# Extraction
# ================================================================

class FactorExtractor:
    """
    Converts a user's events into factor observations.

    Args:
        lookahead_window_hours: How long after an event a flare still counts
                                as that event's outcome (default 48)
        food_extractor: Strategy for food mentions in notes
    """

    def __init__(
        self,
        lookahead_window_hours: float = LOOKAHEAD_WINDOW_HOURS,
        food_extractor: Optional[FoodExtractor] = None
    ) -> None:
        self.lookahead_window_hours = lookahead_window_hours
        self.food_extractor = food_extractor or PhraseFoodExtractor()

    def extract(
        self,
        events: Sequence[HealthEvent],
        timezone_name: Optional[str] = "UTC"
    ) -> List[FactorObservation]:
        """
        Extract observations for every event.

        Events may arrive in any order; they are processed oldest first.

        Returns:
            Ordered list of observations (one event may yield many)
        """
        ordered = sorted(events, key=lambda e: (e.occurred_at, e.id))
        flares = [e for e in ordered if e.is_flare]
        flare_times = [f.occurred_at for f in flares]
        tz = resolve_timezone(timezone_name)

        observations: List[FactorObservation] = []
        for event in ordered:
            outcome = self.find_outcome(event, flares, flare_times)
            observations.extend(self.extract_event(event, outcome, tz))

        logger.debug(f"Extracted {len(observations)} observations from {len(ordered)} events")
        return observations

    def find_outcome(
        self,
        event: HealthEvent,
        flares: Sequence[HealthEvent],
        flare_times: Sequence[datetime]
    ) -> Optional[Outcome]:
        """
        Attribute an outcome to an event.

        A flare is its own outcome. Otherwise the earliest other flare strictly
        inside (event time, event time + window) is the outcome.
        """
        if event.is_flare:
            return Outcome(event_id=event.id, severity=event.severity, delay_hours=0.0)

        horizon = event.occurred_at + timedelta(hours=self.lookahead_window_hours)
        for flare in flares[bisect_right(flare_times, event.occurred_at):]:
            if flare.occurred_at >= horizon:
                break
            if flare.id == event.id:
                continue
            delay = (flare.occurred_at - event.occurred_at).total_seconds() / 3600
            return Outcome(event_id=flare.id, severity=flare.severity, delay_hours=delay)
        return None

    def extract_event(
        self,
        event: HealthEvent,
        outcome: Optional[Outcome],
        tz: tzinfo
    ) -> List[FactorObservation]:
        """Observations for one event given its (possibly absent) outcome"""
        observations: List[FactorObservation] = []

        def observe(key: str, own_flare: bool = False, delay: Optional[float] = None) -> None:
            prefix = key.split(":", 1)[0]
            if own_flare:
                had_outcome, severity = True, event.severity
            else:
                had_outcome = outcome is not None
                severity = outcome.severity if outcome else None
                delay = outcome.delay_hours if outcome else None
            observations.append(FactorObservation(
                factor_key=key,
                category=CATEGORY_BY_PREFIX[prefix],
                event_id=event.id,
                occurred_at=event.occurred_at,
                had_outcome=had_outcome,
                severity_of_outcome=severity,
                delay_hours=delay
            ))

        # 1. Food mentioned in the note
        if event.note:
            for food in self.food_extractor.extract(event.note):
                observe(f"food:{_normalize(food)}")

        # 2. Weather, air quality, pollen
        for field, bucket in weather_buckets(event.environment).items():
            observe(f"weather:{field}:{bucket}")

        # 3. Wearable readings
        for field, bucket in physiology_buckets(event.physiology).items():
            observe(f"physio:{field}:{bucket}")

        # 4. When flares happen
        if event.is_flare:
            observe(f"time:tod:{time_of_day(event.occurred_at, tz)}", own_flare=True, delay=0.0)
            observe(f"time:dow:{day_of_week(event.occurred_at, tz)}", own_flare=True, delay=0.0)

        # 5. Where flares happen
        if event.is_flare and event.city:
            observe(f"location:{_normalize(event.city)}", own_flare=True, delay=0.0)

        # 6. Explicit triggers
        for trigger in dict.fromkeys(_normalize(t) for t in event.triggers):
            observe(f"trigger:{trigger}")

        # 7. Medications
        for medication in dict.fromkeys(_normalize(m) for m in event.medications):
            observe(f"medication:{medication}")

        # 8. Non-flare entry kinds
        if event.kind and event.kind != "flare":
            observe(f"activity:{event.kind}")

        # 9. Symptoms that cluster within a flare
        if event.is_flare:
            for pair in symptom_pairs(event.symptoms):
                observe(f"symptom_pair:{pair}", own_flare=True, delay=None)

        return observations


def extract_observations(
    events: Sequence[HealthEvent],
    timezone_name: Optional[str] = "UTC",
    lookahead_window_hours: float = LOOKAHEAD_WINDOW_HOURS,
    food_extractor: Optional[FoodExtractor] = None
) -> List[FactorObservation]:
    """Convenience wrapper around FactorExtractor.extract()"""
    extractor = FactorExtractor(lookahead_window_hours, food_extractor)
    return extractor.extract(events, timezone_name)

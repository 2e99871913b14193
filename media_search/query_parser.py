"""Natural-language query -> structured filters.

The chat service does the parsing when it can; otherwise a conservative
keyword/regex parser takes over.
"""

import calendar
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

from errors import ChatError, ParseFailure
from llm import ChatService

logger = logging.getLogger(__name__)


class QueryMediaType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    ALL = "all"


def _present(value: str | None) -> bool:
    """False for None, blank, or the string "null" that models sometimes emit."""
    return value is not None and bool(value.strip()) and value.strip().lower() != "null"


@dataclass
class TimePeriod:
    description: str = ""
    start_date: str | None = None
    end_date: str | None = None

    @property
    def is_complete(self) -> bool:
        return _present(self.start_date) and _present(self.end_date)

    def date_range(self) -> tuple[datetime, datetime] | None:
        """[start, end + 1 day) as datetimes; end date is inclusive. None if unusable."""
        if not self.is_complete:
            return None
        try:
            start = datetime.strptime(self.start_date.strip(), "%Y-%m-%d")
            end = datetime.strptime(self.end_date.strip(), "%Y-%m-%d") + timedelta(days=1)
        except ValueError:
            return None
        if end <= start:
            return None
        return start, end


@dataclass
class ParsedQuery:
    raw_terms: str
    location: str | None = None
    location_hint: str | None = None
    time_period: TimePeriod | None = None
    labels: list[str] = field(default_factory=list)
    people: list[str] = field(default_factory=list)
    is_self_photos: bool = False
    media_type: QueryMediaType = QueryMediaType.ALL
    activity: str | None = None
    limit: int | None = None
    source: str = "fallback"

    @property
    def has_location(self) -> bool:
        return _present(self.location)

    @property
    def has_location_hint(self) -> bool:
        return _present(self.location_hint)

    @property
    def has_labels(self) -> bool:
        return any(_present(label) for label in self.labels)

    @property
    def has_time_period(self) -> bool:
        return self.time_period is not None and self.time_period.is_complete

    @property
    def has_people(self) -> bool:
        return any(_present(name) for name in self.people)

    @property
    def has_activity(self) -> bool:
        return _present(self.activity)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["media_type"] = self.media_type.value
        return data


_SYSTEM_PROMPT = """You are a photo/video search query parser. Extract structured information from natural language.

IMPORTANT: Output ONLY valid JSON. Use JSON null (not the string "null") for missing values.

Schema:
{{
  "location": "place name" or null,
  "locationHint": "hotel|beach|restaurant|city|landmark|park|museum|airport" or null,
  "timePeriod": {{"description": "original time reference", "startDate": "YYYY-MM-DD" or null, "endDate": "YYYY-MM-DD" or null}} or null,
  "labels": ["visual labels"],
  "people": ["names"],
  "isSelfPhotos": false,
  "mediaType": "photo|video|all",
  "activity": "specific action being performed" or null,
  "limit": number or null,
  "searchTerms": "cleaned keywords"
}}

Rules:
- isSelfPhotos: true ONLY when the user wants to see THEMSELVES ("photos of me", "selfies", "pictures of myself", "my photos" meaning photos of me).
- isSelfPhotos: false for "my trip", "my vacation", "my beach photos". The user wants those subjects, not selfies.
- people: ONLY real names like "Sarah", "John", "Mom". Never pronouns such as I, me, myself, we.
- location: null when no specific place is mentioned. "my last trip" has no location.
- labels: include relevant visual labels. trip/vacation -> ["outdoor", "travel"].
- timePeriod: compute real dates. Today is {today}. "last summer" -> {last_year}-06-01 to {last_year}-08-31. endDate is inclusive.
- activity: the action for video searches. "video where I jump rope" -> "jumping rope".

Label mappings:
- trip/vacation/holiday -> ["outdoor", "travel"]
- beach/sea/ocean -> ["beach", "water"]
- sunset/sunrise -> ["sunset"]
- food/dinner/meal -> ["food"]
- party/celebration -> ["party"]
- wedding -> ["wedding"]
- mountains/hiking -> ["mountain", "nature"]
- city/urban -> ["city"]
- snow/winter/skiing -> ["snow"]

Examples:
"photos from my last trip" -> location: null, labels: ["outdoor", "travel"], isSelfPhotos: false
"beach photos from Greece" -> location: "Greece", labels: ["beach", "outdoor"], isSelfPhotos: false
"photos of me at the beach" -> labels: ["beach"], isSelfPhotos: true
"photos with Sarah" -> people: ["Sarah"], labels: []
"video where I jump rope" -> mediaType: "video", activity: "jumping rope", labels: []
"video of me cooking" -> mediaType: "video", activity: "cooking"
"show me videos where I play guitar" -> mediaType: "video", activity: "playing guitar"
"dancing videos" -> mediaType: "video", activity: "dancing"
"""

_PRONOUNS = {"i", "me", "myself", "we", "us", "ourselves", "you", "my", "our", "mine"}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

# -- fallback tables --

LABEL_KEYWORDS: dict[str, list[str]] = {
    "beach": ["beach", "sea", "ocean", "shore", "coast"],
    "sunset": ["sunset", "sunrise", "golden hour", "dusk", "dawn"],
    "food": ["food", "meal", "dinner", "lunch", "breakfast", "restaurant", "eating"],
    "party": ["party", "celebration", "birthday"],
    "wedding": ["wedding", "marriage", "bride", "groom"],
    "mountain": ["mountain", "hiking", "trail", "peak"],
    "snow": ["snow", "winter", "skiing", "snowboard"],
    "city": ["city", "urban", "downtown", "street"],
    "nature": ["nature", "forest", "tree", "garden", "park"],
    "water": ["water", "pool", "lake", "river", "swimming"],
    "night": ["night", "evening", "dark"],
    "outdoor": ["outdoor", "outside", "vacation", "trip", "travel"],
    "indoor": ["indoor", "inside", "home", "room"],
    "dog": ["dog", "puppy", "canine"],
    "cat": ["cat", "kitten", "kitty"],
    "person": ["portrait", "selfie", "face"],
}

SELF_PHRASES = [
    "photo of me", "photos of me", "picture of me", "pictures of me",
    "selfie", "my face", "me in", "myself",
]

ACTIVITY_PATTERNS: list[tuple[str, str]] = [
    ("jump rope", "jumping rope"),
    ("jumping rope", "jumping rope"),
    ("skip rope", "jumping rope"),
    ("skipping rope", "jumping rope"),
    ("running", "running"),
    ("jogging", "running"),
    ("walking", "walking"),
    ("swimming", "swimming"),
    ("cycling", "cycling"),
    ("biking", "cycling"),
    ("yoga", "yoga"),
    ("stretching", "stretching"),
    ("workout", "exercising"),
    ("exercise", "exercising"),
    ("pushup", "doing pushups"),
    ("push-up", "doing pushups"),
    ("squat", "doing squats"),
    ("play guitar", "playing guitar"),
    ("playing guitar", "playing guitar"),
    ("play piano", "playing piano"),
    ("playing piano", "playing piano"),
    ("play drums", "playing drums"),
    ("playing drums", "playing drums"),
    ("singing", "singing"),
    ("sing", "singing"),
    ("cooking", "cooking"),
    ("cook", "cooking"),
    ("baking", "baking"),
    ("bake", "baking"),
    ("dancing", "dancing"),
    ("dance", "dancing"),
    ("reading", "reading"),
    ("drawing", "drawing"),
    ("painting", "painting"),
    ("cleaning", "cleaning"),
    ("gardening", "gardening"),
    ("eating", "eating"),
    ("talking", "talking"),
    ("laughing", "laughing"),
]

_ACTIVITY_PREFIXES = ["where i ", "where we ", "of me ", "of us "]

_LOCATION_RE = re.compile(r"\b(?:from|in|at)\s+(.+)", re.IGNORECASE)
_LOCATION_STOP_WORDS = {
    "last", "this", "next", "in", "on", "at", "from", "during", "with", "when",
    "where", "of", "and", "recent", "recently", "yesterday", "today", "the",
    "my", "our", "your",
}
_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
_LIMIT_RE = re.compile(r"(\d+)\s*(?:photos?|videos?|pictures?)", re.IGNORECASE)


def _contains_word(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}s?\b", text) is not None


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseFailure(f"{key} must be a string, got {type(value).__name__}")
    return value.strip() if _present(value) else None


def _str_list(data: dict, key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ParseFailure(f"{key} must be a list of strings")
    return [v.strip() for v in value if _present(v)]


def parsed_query_from_dict(data: dict, raw_query: str) -> ParsedQuery:
    """Validate a chat-produced JSON object. Raises ParseFailure."""
    if not isinstance(data, dict):
        raise ParseFailure("Expected a JSON object")

    period = None
    raw_period = data.get("timePeriod")
    if raw_period is not None:
        if not isinstance(raw_period, dict):
            raise ParseFailure("timePeriod must be an object")
        period = TimePeriod(
            description=_optional_str(raw_period, "description") or "",
            start_date=_optional_str(raw_period, "startDate"),
            end_date=_optional_str(raw_period, "endDate"),
        )

    media = (data.get("mediaType") or "all")
    if not isinstance(media, str):
        raise ParseFailure("mediaType must be a string")
    try:
        media_type = QueryMediaType(media.strip().lower())
    except ValueError:
        media_type = QueryMediaType.ALL

    limit = data.get("limit")
    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, (int, float, str)):
            raise ParseFailure("limit must be a number")
        try:
            limit = int(limit)
        except ValueError:
            limit = None
        if limit is not None and limit <= 0:
            limit = None

    is_self = data.get("isSelfPhotos", data.get("isMyPhotos", False))
    if not isinstance(is_self, bool):
        raise ParseFailure("isSelfPhotos must be a boolean")

    people = [p for p in _str_list(data, "people") if p.lower() not in _PRONOUNS]

    return ParsedQuery(
        raw_terms=raw_query,
        location=_optional_str(data, "location"),
        location_hint=_optional_str(data, "locationHint"),
        time_period=period,
        labels=_str_list(data, "labels"),
        people=people,
        is_self_photos=is_self,
        media_type=media_type,
        activity=_optional_str(data, "activity"),
        limit=limit,
        source="llm",
    )


def _month_start(d: date, months_back: int) -> date:
    year, month = d.year, d.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return date(year, month, 1)


def fallback_time_period(lowered: str, today: date) -> TimePeriod | None:
    """Relative-date phrases and explicit years, resolved against today."""
    last_year = today.year - 1

    def period(description: str, start: date | None, end: date | None) -> TimePeriod:
        return TimePeriod(
            description=description,
            start_date=start.isoformat() if start else None,
            end_date=end.isoformat() if end else None,
        )

    # The most recent winter that has already ended.
    winter_end_year = today.year if today.month >= 3 else today.year - 1
    feb_end = calendar.monthrange(winter_end_year, 2)[1]
    week_ago = today - timedelta(days=7)
    table: list[tuple[str, date | None, date | None]] = [
        ("last summer", date(last_year, 6, 1), date(last_year, 8, 31)),
        ("last winter", date(winter_end_year - 1, 12, 1), date(winter_end_year, 2, feb_end)),
        ("last year", date(last_year, 1, 1), date(last_year, 12, 31)),
        ("this year", date(today.year, 1, 1), today),
        ("last month", _month_start(today, 1), today),
        ("last week", week_ago, today),
        ("recently", week_ago, today),
        ("recent", week_ago, today),
        ("yesterday", today - timedelta(days=1), today - timedelta(days=1)),
        ("today", today, today),
        ("last trip", None, None),
        ("last vacation", None, None),
    ]
    for phrase, start, end in table:
        if phrase in lowered:
            return period(phrase, start, end)

    match = _YEAR_RE.search(lowered)
    if match:
        year = int(match.group(1))
        return period(match.group(1), date(year, 1, 1), date(year, 12, 31))
    return None


def fallback_location(query: str) -> str | None:
    """Up to three words after from/in/at, stopping at time words."""
    match = _LOCATION_RE.search(query)
    if not match:
        return None
    words = []
    for word in match.group(1).split()[:3]:
        cleaned = word.strip(".,!?;:\"'")
        lowered = cleaned.lower()
        if not cleaned or lowered in _LOCATION_STOP_WORDS or _YEAR_RE.fullmatch(lowered):
            if words or lowered != "the":
                break
            continue
        words.append(cleaned)
    if not words:
        return None
    location = " ".join(words)
    lowered = location.lower()
    # "at the beach" names a scene, not a place.
    if any(lowered == kw or lowered == kw + "s" for kws in LABEL_KEYWORDS.values() for kw in kws):
        return None
    if lowered.rstrip("s") in {"photo", "picture", "video", "selfie"}:
        return None
    return location


def fallback_labels(lowered: str) -> list[str]:
    return [
        label for label, keywords in LABEL_KEYWORDS.items()
        if any(_contains_word(lowered, kw) for kw in keywords)
    ]


def fallback_activity(lowered: str) -> str | None:
    for pattern, activity in ACTIVITY_PATTERNS:
        if _contains_word(lowered, pattern):
            return activity
    for prefix in _ACTIVITY_PREFIXES:
        idx = lowered.find(prefix)
        if idx >= 0:
            words = lowered[idx + len(prefix):].split()[:3]
            if words:
                return " ".join(words).strip(".,!?;:")
    return None


def fallback_media_type(lowered: str) -> QueryMediaType:
    if "video" in lowered:
        return QueryMediaType.VIDEO
    if "photo" in lowered or "picture" in lowered:
        return QueryMediaType.PHOTO
    return QueryMediaType.ALL


class QueryParser:
    def __init__(self, chat: ChatService | None = None, use_llm: bool = True):
        self.chat = chat or ChatService()
        self.use_llm = use_llm

    def parse(self, query: str, today: date | None = None) -> ParsedQuery:
        today = today or date.today()
        if self.use_llm:
            try:
                parsed = self.parse_with_llm(query, today)
                logger.info("Parsed %r with LLM", query)
                return parsed
            except (ChatError, ParseFailure) as exc:
                logger.info("LLM parse failed for %r (%s), using fallback", query, exc)
        return self.fallback_parse(query, today)

    def parse_with_llm(self, query: str, today: date) -> ParsedQuery:
        system = _SYSTEM_PROMPT.format(today=today.isoformat(), last_year=today.year - 1)
        reply = self.chat.complete(query, system=system, temperature=0.1, max_tokens=500)
        try:
            data = json.loads(_strip_fences(reply))
        except ValueError as exc:
            raise ParseFailure(f"Invalid JSON: {exc}") from exc
        return parsed_query_from_dict(data, query)

    def fallback_parse(self, query: str, today: date) -> ParsedQuery:
        lowered = query.lower()
        media_type = fallback_media_type(lowered)

        limit = None
        match = _LIMIT_RE.search(query)
        if match:
            limit = int(match.group(1)) or None

        return ParsedQuery(
            raw_terms=query,
            location=fallback_location(query),
            time_period=fallback_time_period(lowered, today),
            labels=fallback_labels(lowered),
            is_self_photos=any(_contains_word(lowered, phrase) for phrase in SELF_PHRASES),
            media_type=media_type,
            activity=fallback_activity(lowered) if media_type == QueryMediaType.VIDEO else None,
            limit=limit,
            source="fallback",
        )

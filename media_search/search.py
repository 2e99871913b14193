"""Multi-stage search over the geo, label and activity indices.

A query is parsed once, then a candidate set is narrowed stage by stage:
location, labels, date, people, self-photos, media type, video activity,
limit. The candidate set starts unconstrained; once a requested filter
comes back empty it stays empty, even when its index was never built.
"""

import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from activity_index import ActivityIndex
from assets import AssetStore, MediaType
from config import (
    DEFAULT_SEARCH_LIMIT,
    LABEL_SKIP_LOCATION_THRESHOLD,
    LOCATION_SEARCH_RADIUS_KM,
    TRIP_CLUSTER_MIN_MATCHES,
    TRIP_MAX_GAP_DAYS,
)
from errors import LocationNotFound
from geo_index import GeoIndex
from index_base import ProgressCallback
from label_index import LabelIndex, MatchMode
from query_parser import ParsedQuery, QueryMediaType, QueryParser

logger = logging.getLogger(__name__)


class CandidateSet:
    """Either unconstrained (no filter has run) or a concrete, possibly empty, id set."""

    __slots__ = ("_ids",)

    def __init__(self, ids: Iterable[str] | None = None):
        self._ids = None if ids is None else frozenset(ids)

    @classmethod
    def unconstrained(cls) -> "CandidateSet":
        return cls(None)

    @classmethod
    def constrained(cls, ids: Iterable[str]) -> "CandidateSet":
        return cls(ids)

    @property
    def is_constrained(self) -> bool:
        return self._ids is not None

    @property
    def is_empty(self) -> bool:
        """True only for a constrained, empty set."""
        return self._ids is not None and not self._ids

    @property
    def ids(self) -> frozenset[str]:
        if self._ids is None:
            raise ValueError("Unconstrained candidate set has no concrete ids")
        return self._ids

    def intersect(self, matches: Iterable[str]) -> "CandidateSet":
        """Narrow by a stage's matches. Unconstrained becomes exactly the matches."""
        if self._ids is None:
            return CandidateSet(matches)
        return CandidateSet(self._ids & set(matches))

    def __len__(self) -> int:
        return len(self._ids) if self._ids is not None else 0

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CandidateSet) and self._ids == other._ids

    def __repr__(self) -> str:
        if self._ids is None:
            return "CandidateSet(unconstrained)"
        return f"CandidateSet({len(self._ids)} ids)"


def apply_date_filter(candidates: CandidateSet, store: AssetStore,
                      start: datetime, end: datetime) -> CandidateSet:
    """Keep candidates created in [start, end); unconstrained takes the whole range."""
    if candidates.is_empty:
        return candidates
    return candidates.intersect(a.id for a in store.fetch_by_date_range(start, end))


def cluster_into_trips(dated: list[tuple[str, datetime]],
                       max_gap_days: float = TRIP_MAX_GAP_DAYS) -> list[list[str]]:
    """Group assets into trips, most recent trip first.

    Assets are sorted newest first; a gap of more than max_gap_days between
    consecutive assets starts a new trip.
    """
    ordered = sorted(dated, key=lambda item: item[1], reverse=True)
    max_gap = timedelta(days=max_gap_days)
    clusters: list[list[str]] = []
    previous: datetime | None = None
    for asset_id, created in ordered:
        if previous is None or previous - created > max_gap:
            clusters.append([])
        clusters[-1].append(asset_id)
        previous = created
    return clusters


@dataclass
class SearchResponse:
    asset_ids: list[str]
    query: str
    parsed: ParsedQuery
    applied_filters: list[str] = field(default_factory=list)
    search_time_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "asset_ids": self.asset_ids,
            "query": self.query,
            "parsed": self.parsed.to_dict(),
            "applied_filters": self.applied_filters,
            "search_time_ms": round(self.search_time_ms, 1),
        }


def _mentioned(query: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term.lower())}s?\b", query.lower()) is not None


class SearchOrchestrator:
    def __init__(
        self,
        store: AssetStore,
        geo_index: GeoIndex,
        label_index: LabelIndex,
        activity_index: ActivityIndex,
        parser: QueryParser,
        location_radius_km: float = LOCATION_SEARCH_RADIUS_KM,
        trip_max_gap_days: float = TRIP_MAX_GAP_DAYS,
        trip_cluster_min_matches: int = TRIP_CLUSTER_MIN_MATCHES,
        label_skip_location_threshold: int = LABEL_SKIP_LOCATION_THRESHOLD,
        default_limit: int | None = DEFAULT_SEARCH_LIMIT,
    ):
        self.store = store
        self.geo_index = geo_index
        self.label_index = label_index
        self.activity_index = activity_index
        self.parser = parser
        self.location_radius_km = location_radius_km
        self.trip_max_gap_days = trip_max_gap_days
        self.trip_cluster_min_matches = trip_cluster_min_matches
        self.label_skip_location_threshold = label_skip_location_threshold
        self.default_limit = default_limit

    def search(self, query: str) -> SearchResponse:
        t0 = time.time()
        parsed = self.parser.parse(query)
        response = self.search_parsed(parsed)
        response.search_time_ms = (time.time() - t0) * 1000
        logger.info("Search %r: %d results in %.0fms [%s]", query, len(response.asset_ids),
                    response.search_time_ms, "; ".join(response.applied_filters))
        return response

    def search_parsed(self, parsed: ParsedQuery) -> SearchResponse:
        t0 = time.time()
        applied: list[str] = []
        candidates = CandidateSet.unconstrained()
        is_video = parsed.media_type == QueryMediaType.VIDEO

        candidates, location_count = self._location_stage(parsed, candidates, applied)
        # Content stages that actually ran, as opposed to what the parser asked for.
        content_filtered = parsed.has_location
        candidates, labels_applied = self._label_stage(
            parsed, candidates, location_count, is_video, applied
        )
        content_filtered = content_filtered or labels_applied

        if parsed.has_time_period:
            date_range = parsed.time_period.date_range()
            if date_range is None:
                applied.append(f"date ignored (invalid: {parsed.time_period.start_date} "
                               f"to {parsed.time_period.end_date})")
            else:
                candidates = apply_date_filter(candidates, self.store, *date_range)
                content_filtered = True
                applied.append(f"date: {parsed.time_period.start_date} to "
                               f"{parsed.time_period.end_date} ({len(candidates)})")

        if parsed.has_people:
            if is_video:
                applied.append("people skipped (video search)")
            else:
                matches: set[str] = set()
                for name in parsed.people:
                    matches.update(a.id for a in self.store.fetch_by_person(name))
                candidates = candidates.intersect(matches)
                applied.append(f"people: {', '.join(parsed.people)} ({len(candidates)})")

        if parsed.is_self_photos:
            candidates = self._self_stage(parsed, candidates, content_filtered, applied)

        if parsed.media_type != QueryMediaType.ALL:
            media = MediaType.VIDEO if is_video else MediaType.IMAGE
            candidates = candidates.intersect(a.id for a in self.store.fetch_by_media_type(media))
            applied.append(f"media: {parsed.media_type.value} ({len(candidates)})")

        if is_video:
            candidates = self._video_stage(parsed, candidates, applied)

        asset_ids = self._finalize(candidates, parsed.limit or self.default_limit)
        return SearchResponse(
            asset_ids=asset_ids,
            query=parsed.raw_terms,
            parsed=parsed,
            applied_filters=applied,
            search_time_ms=(time.time() - t0) * 1000,
        )

    # -- stages --

    def _location_stage(self, parsed: ParsedQuery, candidates: CandidateSet,
                        applied: list[str]) -> tuple[CandidateSet, int]:
        if not parsed.has_location:
            return candidates, 0
        place = parsed.location
        if parsed.has_location_hint and parsed.location_hint.lower() not in place.lower():
            place = f"{place} {parsed.location_hint}"
        try:
            ids = self.geo_index.search(place, self.location_radius_km)
        except LocationNotFound:
            applied.append(f"location: {place} (not found)")
            return CandidateSet.constrained(()), 0

        found = len(ids)
        if found > self.trip_cluster_min_matches and not parsed.has_time_period:
            ids = self._most_recent_trip(ids)
            applied.append(f"location: {place} ({found}), most recent trip ({len(ids)})")
        else:
            applied.append(f"location: {place} ({found})")
        return candidates.intersect(ids), found

    def _label_stage(self, parsed: ParsedQuery, candidates: CandidateSet, location_count: int,
                     is_video: bool, applied: list[str]) -> tuple[CandidateSet, bool]:
        if not parsed.has_labels:
            return candidates, False
        if is_video:
            applied.append("labels skipped (video search)")
            return candidates, False
        labels = [label for label in parsed.labels if label.strip()]
        if parsed.has_location and location_count >= self.label_skip_location_threshold:
            # Inferred labels add nothing once the place matched; stated ones still filter.
            labels = [label for label in labels if _mentioned(parsed.raw_terms, label)]
            if not labels:
                applied.append("labels skipped (location matched)")
                return candidates, False
        if self.label_index.is_empty:
            applied.append(f"labels: {', '.join(labels)} (label index not built, 0 left)")
            return candidates.intersect(()), True

        expanded = self.label_index.expand_search_terms(labels)
        matches = self.label_index.search_labels(expanded, MatchMode.ANY)
        candidates = candidates.intersect(matches)
        applied.append(f"labels: {', '.join(labels)} -> {', '.join(expanded[:5])} "
                       f"({len(matches)} matches, {len(candidates)} left)")
        return candidates, True

    def _self_stage(self, parsed: ParsedQuery, candidates: CandidateSet, content_filtered: bool,
                    applied: list[str]) -> CandidateSet:
        has_candidates = candidates.is_constrained and not candidates.is_empty
        if not has_candidates and content_filtered:
            applied.append("self-photos skipped (content filter found nothing)")
            return candidates
        media = None
        if parsed.media_type == QueryMediaType.PHOTO:
            media = MediaType.IMAGE
        elif parsed.media_type == QueryMediaType.VIDEO:
            media = MediaType.VIDEO
        own = [a.id for a in self.store.fetch_self_assets(media)]
        if not own:
            applied.append("self-photos skipped (no owner face tags)")
            return candidates
        candidates = candidates.intersect(own)
        applied.append(f"self-photos ({len(candidates)})")
        return candidates

    def _video_stage(self, parsed: ParsedQuery, candidates: CandidateSet,
                     applied: list[str]) -> CandidateSet:
        """Semantic match of the raw query against analyzed videos.

        When the query names content (an activity or labels) an empty match
        empties the result. A bare "videos from 2023" keeps its candidates.
        """
        names_content = parsed.has_activity or parsed.has_labels
        if parsed.has_activity:
            topic = parsed.activity
        elif parsed.has_labels:
            topic = ", ".join(label for label in parsed.labels if label.strip())
        else:
            topic = None

        if candidates.is_empty:
            applied.append("video search (no candidates)")
            return candidates
        if self.activity_index.is_empty:
            if names_content:
                applied.append(f"video search: {topic} (no videos analyzed, 0 left)")
                return candidates.intersect(())
            applied.append("video search skipped (no videos analyzed)")
            return candidates

        matches = self.activity_index.search_with_llm(parsed.raw_terms, topic)
        if not matches and not names_content:
            applied.append(f"video search: {parsed.raw_terms!r} (no matches, kept "
                           f"{len(candidates)})")
            return candidates
        candidates = candidates.intersect(matches)
        applied.append(f"video search: {parsed.raw_terms!r} ({len(matches)} matches, "
                       f"{len(candidates)} left)")
        return candidates

    def _most_recent_trip(self, ids: list[str]) -> list[str]:
        assets = self.store.fetch_by_ids(ids)
        dated = [(a.id, a.created_at) for a in assets if a.created_at is not None]
        if not dated:
            return ids
        clusters = cluster_into_trips(dated, self.trip_max_gap_days)
        logger.debug("Location matches form %d trips", len(clusters))
        return clusters[0]

    def _finalize(self, candidates: CandidateSet, limit: int | None) -> list[str]:
        """Concrete ids, newest first, capped. Nothing requested means nothing returned."""
        if not candidates.is_constrained or candidates.is_empty:
            return []
        ordered = [a.id for a in self.store.fetch_by_ids(candidates.ids)]
        if limit is not None:
            ordered = ordered[:limit]
        return ordered

    # -- index management --

    def build_indexes(self, progress_callback: ProgressCallback | None = None) -> dict:
        """Build the geo and label indices. Video analysis is built separately."""
        return {
            "geo": self.geo_index.build_index(progress_callback),
            "labels": self.label_index.build_index(progress_callback=progress_callback),
        }

    def stats(self) -> dict:
        return {
            "geo": self.geo_index.stats(),
            "labels": self.label_index.stats(),
            "video": self.activity_index.stats(),
        }

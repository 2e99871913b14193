"""Video activity index.

Each video is summarized once: three frames are labeled by the visual
classifier, a clip around the midpoint is transcribed, and the chat service
describes what is happening. The summary, transcript and labels are mined
for keywords that feed an inverted index; searches match keywords first and
let the chat service weed out superficial matches.
"""

import logging
import re
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from pathlib import Path

from assets import AssetStore, MediaAsset, MediaType
from blob_store import BlobStore
from classifier import VisualClassifier
from config import (
    ACTIVITY_INDEX_KEY,
    AUDIO_SEGMENT_SECONDS,
    FRAME_MAX_SIZE,
    FRAME_POSITIONS,
    LABEL_MIN_CONFIDENCE,
    MAX_LABELS_PER_ASSET,
    SCREEN_LABELS,
    VIDEO_CONCURRENCY,
    VIDEO_SAVE_INTERVAL,
)
from errors import (
    ChatError,
    CouldNotLoadVideo,
    FrameExtractionFailed,
    NotAVideo,
    SkipVideo,
    TranscriptionError,
    VideoAnalysisError,
)
from index_base import PersistentIndex, ProgressCallback
from label_index import MatchMode, match_labels, top_labels
from labels import PERSON_LABELS, normalize_label
from llm import ChatService
from transcribe import SpeechTranscriber
from video import MediaToolError, extract_audio_segment, has_audio_track, read_frames

logger = logging.getLogger(__name__)

ACTIVITY_PHRASES = [
    # exercise
    "jumping", "running", "walking", "swimming", "cycling", "yoga", "stretching",
    "exercising", "workout", "training", "lifting", "pushup", "squat", "plank",
    "jump rope", "jumping rope", "skipping rope",
    # music
    "playing", "guitar", "piano", "drums", "singing", "music", "instrument",
    # cooking
    "cooking", "baking", "preparing", "cutting", "chopping", "stirring",
    "grilling", "frying", "boiling",
    # at home
    "dancing", "reading", "writing", "typing", "drawing", "painting",
    "cleaning", "washing", "ironing", "gardening",
    # social
    "talking", "laughing", "eating", "drinking", "meeting", "party",
    # outdoors
    "hiking", "climbing", "camping", "fishing", "skiing", "snowboarding",
    "surfing", "skating", "biking",
]

SUMMARY_STOP_WORDS = {
    "this", "that", "with", "from", "have", "been", "being", "person",
    "video", "shows", "appears", "seems",
}

TRANSCRIPT_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "is", "it", "this", "that", "was", "were", "be",
    "been", "being", "have", "has", "had", "do", "does", "did", "will",
    "would", "could", "should", "may", "might", "must", "can", "i", "you",
    "he", "she", "we", "they", "me", "him", "her", "us", "them", "my", "your",
    "his", "its", "our", "their", "what", "which", "who", "not", "no", "yes",
    "just", "so", "very", "really", "like", "get", "got",
}

ACTIVITY_SYNONYMS: dict[str, list[str]] = {
    "jumping rope": ["jump rope", "skipping rope", "skip rope", "rope jumping", "rope skipping"],
    "jump rope": ["jumping rope", "skipping rope", "skip rope", "rope jumping", "rope skipping"],
    "skipping rope": ["jump rope", "jumping rope", "skip rope", "rope jumping", "rope skipping"],
    "running": ["jogging", "run", "jog"],
    "jogging": ["running", "run", "jog"],
    "exercising": ["workout", "working out", "exercise", "training"],
    "workout": ["exercising", "working out", "exercise", "training"],
    "playing guitar": ["guitar playing", "guitar", "strumming"],
    "playing piano": ["piano playing", "piano", "keyboard"],
    "cooking": ["cook", "preparing food", "making food", "kitchen"],
    "dancing": ["dance", "moves"],
}

_WORD_RE = re.compile(r"[a-z0-9]+")

_DESCRIBE_PROMPT = (
    "This image shows 3 frames from a video, in order (beginning, middle, end). "
    "Describe the main activity happening in 1-2 sentences. Be specific about "
    "what the people are doing (e.g. 'A woman is jumping rope in a garden'). "
    "Focus on actions, not on what things look like."
)

_REFINE_INSTRUCTION = (
    'Below are descriptions of videos. Which of them show someone actually '
    'doing this activity: "{activity}"? Only count videos where that activity '
    'is really happening. Exclude superficially similar but different things '
    '(for example, a baby in a jumper is not "jumping rope").'
)

_QUERY_INSTRUCTION = (
    'The user is searching their videos for: "{query}". Below are descriptions '
    'of every indexed video. Which of them match what the user is looking for?'
)


def _tokens(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def transcript_tokens(transcript: str) -> set[str]:
    return {
        word for word in _tokens(transcript)
        if len(word) >= 3 and word not in TRANSCRIPT_STOP_WORDS
    }


def extract_keywords(summary: str, transcript: str | None,
                     visual_labels: list[str]) -> set[str]:
    """Activity phrases, summary words, transcript words and labels, lowercased."""
    keywords: set[str] = set()
    text = f"{summary} {transcript or ''}".lower()
    for phrase in ACTIVITY_PHRASES:
        if re.search(rf"\b{re.escape(phrase)}\b", text):
            keywords.add(phrase)
    for word in _tokens(summary):
        if len(word) > 3 and word not in SUMMARY_STOP_WORDS:
            keywords.add(word)
    if transcript:
        keywords |= transcript_tokens(transcript)
    keywords.update(label.strip().lower() for label in visual_labels if label.strip())
    return keywords


def expand_activity_terms(activity: str) -> list[str]:
    """The activity, its longer words, and any synonym group it touches."""
    activity = activity.strip().lower()
    terms: list[str] = []

    def add(term: str) -> None:
        if term and term not in terms:
            terms.append(term)

    add(activity)
    for word in activity.split():
        if len(word) > 2:
            add(word)
    for key, synonyms in ACTIVITY_SYNONYMS.items():
        if key in activity or any(s in activity for s in synonyms):
            add(key)
            for synonym in synonyms:
                add(synonym)
                for word in synonym.split():
                    if len(word) > 2:
                        add(word)
    return terms


def fallback_summary(visual_labels: list[str], transcript: str | None) -> str:
    parts = []
    if visual_labels:
        parts.append("Visual: " + ", ".join(visual_labels[:5]))
    if transcript:
        parts.append(f'Audio: "{transcript[:100]}"')
    return " | ".join(parts) if parts else "No description available"


def is_screen_content(frame_labels: list[list[str]]) -> bool:
    """Screen recordings: a screen label somewhere, and nobody in any frame."""
    seen = {normalize_label(label) for labels in frame_labels for label in labels}
    return bool(seen & SCREEN_LABELS) and not (seen & PERSON_LABELS)


@dataclass
class ActivityRecord:
    asset_id: str
    activity_summary: str
    audio_transcript: str | None = None
    keywords: set[str] = field(default_factory=set)
    visual_labels: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    indexed_at: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["keywords"] = sorted(self.keywords)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityRecord":
        return cls(
            asset_id=data["asset_id"],
            activity_summary=data["activity_summary"],
            audio_transcript=data.get("audio_transcript"),
            keywords=set(data.get("keywords", [])),
            visual_labels=list(data.get("visual_labels", [])),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            indexed_at=float(data.get("indexed_at", 0.0)),
        )


@dataclass
class ActivityIndexStats:
    total: int = 0
    processed: int = 0
    newly_indexed: int = 0
    skipped: int = 0
    skipped_content: int = 0
    failed: int = 0
    elapsed: float = 0.0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class ActivityIndex(PersistentIndex):
    name = "activity index"

    def __init__(
        self,
        store: AssetStore,
        blob_store: BlobStore,
        classifier: VisualClassifier,
        chat: ChatService | None = None,
        transcriber: SpeechTranscriber | None = None,
        concurrency: int = VIDEO_CONCURRENCY,
        save_interval: int = VIDEO_SAVE_INTERVAL,
    ):
        self.store = store
        self.classifier = classifier
        self.chat = chat or ChatService()
        self.transcriber = transcriber or SpeechTranscriber(chat=self.chat)
        self.concurrency = max(1, concurrency)
        self.save_interval = save_interval
        super().__init__(blob_store, ACTIVITY_INDEX_KEY)

    # -- state --

    def _reset(self) -> None:
        self._records: dict[str, ActivityRecord] = {}
        self._activity_map: dict[str, set[str]] = {}
        self._video_label_map: dict[str, set[str]] = {}
        self._indexed: set[str] = set()

    def _to_snapshot(self) -> dict:
        return {
            "records": {k: r.to_dict() for k, r in sorted(self._records.items())},
            "activities": {k: sorted(v) for k, v in sorted(self._activity_map.items())},
            "video_labels": {k: sorted(v) for k, v in sorted(self._video_label_map.items())},
            "indexed": sorted(self._indexed),
        }

    def _from_snapshot(self, data: dict) -> None:
        self._records = {k: ActivityRecord.from_dict(r) for k, r in data["records"].items()}
        self._activity_map = {k: set(v) for k, v in data["activities"].items()}
        self._video_label_map = {k: set(v) for k, v in data["video_labels"].items()}
        self._indexed = set(data["indexed"])

    def _add(self, record: ActivityRecord) -> None:
        self._records[record.asset_id] = record
        for keyword in record.keywords:
            self._activity_map.setdefault(keyword, set()).add(record.asset_id)
        for label in record.visual_labels:
            self._video_label_map.setdefault(normalize_label(label), set()).add(record.asset_id)
        self._indexed.add(record.asset_id)

    # -- analysis --

    def analyze_video(self, asset: MediaAsset) -> ActivityRecord:
        """Summarize one video. Raises VideoAnalysisError subclasses."""
        if asset.media_type != MediaType.VIDEO:
            raise NotAVideo(asset.id)
        path = self.store.video_path(asset)
        if path is None:
            raise CouldNotLoadVideo(asset.id, "original is not on disk")

        with ThreadPoolExecutor(max_workers=1) as pool:
            transcript_future = pool.submit(self._transcribe_midpoint, asset, path)
            try:
                frames = read_frames(path, FRAME_POSITIONS, FRAME_MAX_SIZE)
            except OSError as exc:
                raise CouldNotLoadVideo(asset.id, str(exc)) from exc
            if not frames:
                raise FrameExtractionFailed(asset.id, "no decodable frames")

            frame_labels = [
                top_labels(self.classifier.classify(frame), LABEL_MIN_CONFIDENCE,
                           MAX_LABELS_PER_ASSET)
                for frame in frames
            ]
            if is_screen_content(frame_labels):
                raise SkipVideo(asset.id, "screen recording")
            transcript = transcript_future.result()

        visual_labels: list[str] = []
        for labels in frame_labels:
            for label in labels:
                if label not in visual_labels:
                    visual_labels.append(label)

        summary = self._describe(asset, frames, transcript, visual_labels)
        return ActivityRecord(
            asset_id=asset.id,
            activity_summary=summary,
            audio_transcript=transcript,
            keywords=extract_keywords(summary, transcript, visual_labels),
            visual_labels=visual_labels,
            duration_seconds=asset.duration,
            indexed_at=time.time(),
        )

    def _transcribe_midpoint(self, asset: MediaAsset, path: Path) -> str | None:
        """Transcript of a clip centered on the midpoint; None if silent or on failure."""
        try:
            if not has_audio_track(path):
                return None
            start = max(0.0, asset.duration / 2 - AUDIO_SEGMENT_SECONDS / 2)
            with tempfile.TemporaryDirectory() as tmp:
                clip = extract_audio_segment(path, start, AUDIO_SEGMENT_SECONDS,
                                             Path(tmp) / "segment.wav")
                transcript = self.transcriber.transcribe(clip)
        except (MediaToolError, TranscriptionError, OSError) as exc:
            logger.info("No transcript for %s: %s", asset.id, exc)
            return None
        return transcript.text or None

    def _describe(self, asset: MediaAsset, frames, transcript: str | None,
                  visual_labels: list[str]) -> str:
        prompt = _DESCRIBE_PROMPT
        if transcript:
            prompt += f'\n\nAudio from the video: "{transcript[:500]}"'
        try:
            return self.chat.describe_frames(frames, prompt)
        except ChatError:
            logger.info("Description failed for %s, using labels", asset.id, exc_info=True)
            return fallback_summary(visual_labels, transcript)

    # -- building --

    def _analyze_unless_cancelled(self, asset: MediaAsset) -> ActivityRecord | None:
        if self.cancelled:
            return None
        return self.analyze_video(asset)

    def build_index(
        self,
        limit: int | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> dict:
        """Analyze pending videos, newest first, a few at a time.

        Cancellation is checked before each video starts and between batches.
        """
        with self._build_session():
            t0 = time.time()
            videos = self.store.fetch_by_media_type(MediaType.VIDEO)
            with self._lock:
                pending = [v for v in videos if v.id not in self._indexed]
            stats = ActivityIndexStats(total=len(videos), skipped=len(videos) - len(pending))
            if limit is not None:
                pending = pending[:limit]

            logger.info("Activity index: %d pending of %d videos", len(pending), len(videos))
            self._report(0, len(pending), "Starting", progress_callback)
            unsaved = 0

            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                for start in range(0, len(pending), self.concurrency):
                    if self.cancelled:
                        stats.cancelled = True
                        break
                    batch = pending[start:start + self.concurrency]
                    futures = {pool.submit(self._analyze_unless_cancelled, v): v for v in batch}
                    for future in as_completed(futures):
                        asset = futures[future]
                        try:
                            record = future.result()
                        except SkipVideo as exc:
                            logger.info("Skipping %s: %s", asset.id, exc)
                            with self._lock:
                                self._indexed.add(asset.id)
                            stats.skipped_content += 1
                            stats.processed += 1
                            unsaved += 1
                            continue
                        except VideoAnalysisError as exc:
                            logger.warning("Video analysis failed: %s", exc)
                            stats.failed += 1
                            stats.processed += 1
                            continue
                        except Exception:
                            logger.warning("Video analysis failed for %s", asset.id, exc_info=True)
                            stats.failed += 1
                            stats.processed += 1
                            continue

                        if record is None:
                            continue
                        with self._lock:
                            self._add(record)
                        stats.newly_indexed += 1
                        stats.processed += 1
                        unsaved += 1

                    if unsaved >= self.save_interval:
                        self.save()
                        unsaved = 0
                    self._report(stats.processed, len(pending),
                                 f"Analyzed {stats.newly_indexed} videos", progress_callback)

            if self.cancelled:
                stats.cancelled = True
            if unsaved:
                self.save()
            stats.elapsed = round(time.time() - t0, 2)
            self._report(stats.processed, len(pending),
                         "Cancelled" if stats.cancelled else "Done", progress_callback)

        logger.info(
            "Activity index: %d new, %d skipped, %d failed in %.1fs%s",
            stats.newly_indexed, stats.skipped_content, stats.failed, stats.elapsed,
            " (cancelled)" if stats.cancelled else "",
        )
        return stats.to_dict()

    # -- search --

    def search(self, activity: str) -> list[str]:
        """Videos showing activity: keyword match, then chat refinement."""
        activity = activity.strip().lower()
        if not activity:
            return []
        terms = expand_activity_terms(activity)

        with self._lock:
            matches: set[str] = set()
            for key, ids in self._activity_map.items():
                if any(key == t or t in key or key in t for t in terms):
                    matches.update(ids)
            if not matches:
                for asset_id, record in self._records.items():
                    text = f"{record.activity_summary} {record.audio_transcript or ''}".lower()
                    if any(t in text for t in terms):
                        matches.add(asset_id)
            candidates = sorted(a for a in matches if a in self._records)
            summaries = [self._records[a].activity_summary for a in candidates]

        logger.debug("Activity %r: %d keyword matches", activity, len(matches))
        if len(candidates) <= 1:
            return sorted(matches)

        try:
            picked = self.chat.select(_REFINE_INSTRUCTION.format(activity=activity), summaries)
        except ChatError:
            logger.info("Activity refinement failed, keeping keyword matches", exc_info=True)
            return sorted(matches)
        if not picked:
            return sorted(matches)
        return sorted(candidates[i] for i in picked)

    def search_with_llm(self, query: str, activity: str | None = None) -> list[str]:
        """Let the chat service pick matching videos from every summary.

        Falls back to keyword search on activity (or the query) if the call fails.
        """
        with self._lock:
            ids = sorted(self._records)
            summaries = [self._records[a].activity_summary for a in ids]
        if not ids:
            return []
        try:
            picked = self.chat.select(_QUERY_INSTRUCTION.format(query=query), summaries)
        except ChatError:
            logger.info("Semantic video search failed, using keywords", exc_info=True)
            return self.search(activity or query)
        return sorted(ids[i] for i in picked)

    def search_by_labels(self, labels: list[str], mode: MatchMode = MatchMode.ANY) -> list[str]:
        normalized = [normalize_label(label) for label in labels if label.strip()]
        with self._lock:
            return sorted(match_labels(self._video_label_map, normalized, mode))

    def search_by_all_labels(self, labels: list[str]) -> list[str]:
        return self.search_by_labels(labels, MatchMode.ALL)

    # -- introspection --

    def record(self, asset_id: str) -> ActivityRecord | None:
        with self._lock:
            return self._records.get(asset_id)

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._records

    def is_indexed(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._indexed

    def stats(self) -> dict:
        with self._lock:
            return {
                "indexed_videos": len(self._indexed),
                "records": len(self._records),
                "with_transcript": sum(1 for r in self._records.values() if r.audio_transcript),
                "unique_keywords": len(self._activity_map),
                "unique_labels": len(self._video_label_map),
                "build": self.progress(),
            }

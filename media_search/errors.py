class MediaSearchError(Exception):
    """Base error for media search."""


class LocationNotFound(MediaSearchError):
    """Every strategy for turning a place name into coordinates failed."""

    def __init__(self, place: str):
        super().__init__(f"Location not found: {place}")
        self.place = place


class VideoAnalysisError(MediaSearchError):
    """A single video could not be analyzed. The batch moves on."""

    def __init__(self, asset_id: str, message: str = ""):
        super().__init__(f"{asset_id}: {message}" if message else asset_id)
        self.asset_id = asset_id


class NotAVideo(VideoAnalysisError):
    pass


class CouldNotLoadVideo(VideoAnalysisError):
    pass


class FrameExtractionFailed(VideoAnalysisError):
    pass


class SkipVideo(VideoAnalysisError):
    """Content not worth indexing (e.g. screen recordings). Not a failure."""


class ParseFailure(MediaSearchError):
    """Chat output could not be decoded into a ParsedQuery."""


class PersistenceFailure(MediaSearchError):
    def __init__(self, key: str, message: str = ""):
        super().__init__(f"Could not persist {key}: {message}")
        self.key = key


class ChatError(MediaSearchError):
    """Chat/completion call failed or returned nothing usable."""


class TranscriptionError(MediaSearchError):
    pass

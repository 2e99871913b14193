"""Thin MCP server for media-search.

Delegates all work to the media-search service daemon via HTTP.
No torch, PIL or OpenCV imports in this process.
"""

import json
import logging

from mcp.server.fastmcp import FastMCP

from client import ServiceClient

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

mcp = FastMCP("media-search")
client = ServiceClient()


@mcp.tool()
def search_media(query: str) -> str:
    """Search the photo and video library with a natural language query.

    The query is parsed into filters (place, visual content, dates, people,
    photos of the owner, photo/video, activity in videos, result count) and
    each filter narrows the result. Examples:
    "beach photos from Greece last summer", "photos with Sarah",
    "video where I jump rope", "20 sunset pictures".

    Returns the filters that were applied and the matching assets, newest first.

    Args:
        query: What to look for, in plain language.
    """
    return client.search(query)


@mcp.tool()
def build_index(index: str = "all", limit: int | None = None) -> str:
    """Start building one or all search indices in the background.

    - geo: places, from photo GPS coordinates (fast)
    - labels: visual content of photos, via an on-device classifier (slow)
    - video: what happens in each video, via frames, audio and a language model (slowest)

    Builds are incremental: already-indexed assets are skipped.

    Args:
        index: "geo", "labels", "video" or "all".
        limit: Maximum number of new assets to process (labels and video only).
    """
    return client.build(index, limit)


@mcp.tool()
def index_status() -> str:
    """Show index sizes and the progress of any running build."""
    return json.dumps(client.status(), indent=2)


@mcp.tool()
def cancel_indexing(index: str) -> str:
    """Stop a running build. Work done so far is kept.

    Args:
        index: "geo", "labels" or "video".
    """
    result = client.cancel(index)
    if result.get("cancelled"):
        return f"Cancelling {index} build."
    return result.get("error", f"No {index} build is running.")


@mcp.tool()
def clear_index(index: str) -> str:
    """Delete an index so it can be rebuilt from scratch.

    Args:
        index: "geo", "labels" or "video".
    """
    result = client.clear(index)
    if result.get("cleared"):
        return f"Cleared {index} index."
    return result.get("error", "Nothing cleared.")


@mcp.tool()
def list_locations(limit: int = 20) -> str:
    """List the places with the most photos, with counts.

    Args:
        limit: Number of places to return (default 20).
    """
    places = client.locations(limit)
    if not places:
        return "No geotagged photos indexed yet. Run build_index('geo') first."
    return "\n".join(f"- {p['place']}: {p['count']}" for p in places)


if __name__ == "__main__":
    mcp.run(transport="stdio")

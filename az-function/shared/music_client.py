"""Client wrapper for the same-origin music proxy.

Every function builds a query against the proxy base path, issues a GET and
unwraps the ``{code: 200, data: ...}`` envelope. Failures of any kind are
logged and reported as an empty result (``[]``, ``None`` or ``""``).
"""

import os
import logging
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .music_models import (
    AudioQuality,
    ExternalPlaylist,
    Platform,
    PlaylistInfo,
    PlaylistSong,
    SearchResult,
    SongInfo,
    TopList,
)

logger = logging.getLogger("music_client")

DEV_BASE_PATH = "/music-api/api"
PROD_BASE_PATH = "/api/music"
DEFAULT_ORIGIN = "http://localhost:7071"

M = TypeVar("M", bound=BaseModel)


def _flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


def resolve_base_path(dev: bool, standalone: bool = False) -> str:
    """Pick the proxy path for the current context.

    Local development goes through the dev-server proxy, except for a
    standalone home-screen app, which cannot use it and talks to the
    production path like a deployed build.
    """
    if dev and not standalone:
        return DEV_BASE_PATH
    return PROD_BASE_PATH


def _base_url() -> str:
    origin = os.getenv("MUSIC_API_ORIGIN", DEFAULT_ORIGIN).rstrip("/")
    return origin + resolve_base_path(_flag("MUSIC_API_DEV"), _flag("MUSIC_API_STANDALONE"))


def _build_url(**params: Any) -> str:
    return f"{_base_url()}?{httpx.QueryParams(params)}"


def _client() -> httpx.Client:
    timeout = float(os.getenv("CLIENT_TIMEOUT_S", "10"))
    return httpx.Client(timeout=timeout, follow_redirects=True)


def _get_data(url: str) -> Optional[Dict[str, Any]]:
    """Return the envelope's ``data`` payload, or None when code is not 200."""
    with _client() as client:
        resp = client.get(url)
    payload = resp.json()
    if not isinstance(payload, dict) or payload.get("code") != 200:
        logger.warning("envelope_rejected", extra={"url": url, "status": resp.status_code, "code": payload.get("code") if isinstance(payload, dict) else None})
        return None
    return payload.get("data") or None


def _parse_items(model: Type[M], items: Iterable[Any]) -> List[M]:
    """Validate list entries one at a time; entries missing an id or name are skipped."""
    parsed: List[M] = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning("item_skipped", extra={"shape": model.__name__, "errors": e.error_count()})
    return parsed


def search_songs(keyword: str, platform: Platform = "netease", limit: int = 20) -> List[SearchResult]:
    """Search a single platform."""
    try:
        data = _get_data(_build_url(source=platform, type="search", keyword=keyword, limit=limit))
        if data and data.get("results"):
            return _parse_items(
                SearchResult,
                ({**item, "platform": item.get("platform") or platform} if isinstance(item, dict) else item for item in data["results"]),
            )
        return []
    except Exception:
        logger.warning("Search failed", exc_info=True, extra={"platform": platform})
        return []


def aggregate_search(keyword: str) -> List[SearchResult]:
    """Search every platform the upstream aggregates."""
    try:
        data = _get_data(_build_url(type="aggregateSearch", keyword=keyword))
        if data and data.get("results"):
            return _parse_items(SearchResult, data["results"])
        return []
    except Exception:
        logger.warning("Aggregate search failed", exc_info=True)
        return []


def get_song_info(id: str, platform: Platform) -> Optional[SongInfo]:
    try:
        data = _get_data(_build_url(source=platform, id=id, type="info"))
        if data:
            return SongInfo.model_validate(data)
        return None
    except Exception:
        logger.warning("Get song info failed", exc_info=True, extra={"platform": platform, "id": id})
        return None


def get_play_url(id: str, platform: Platform, quality: AudioQuality = "320k") -> str:
    return _build_url(source=platform, id=id, type="url", br=quality)


def get_cover_url(id: str, platform: Platform) -> str:
    return _build_url(source=platform, id=id, type="pic")


def get_lyrics_url(id: str, platform: Platform) -> str:
    return _build_url(source=platform, id=id, type="lrc")


def get_lyrics(id: str, platform: Platform) -> str:
    """Fetch the raw LRC text; the lyrics endpoint is not enveloped."""
    try:
        with _client() as client:
            resp = client.get(get_lyrics_url(id, platform))
            resp.raise_for_status()
        return resp.text
    except Exception:
        logger.warning("Get lyrics failed", exc_info=True, extra={"platform": platform, "id": id})
        return ""


def get_top_lists(platform: Platform) -> List[TopList]:
    try:
        data = _get_data(_build_url(source=platform, type="toplists"))
        if data and data.get("list"):
            return _parse_items(TopList, data["list"])
        return []
    except Exception:
        logger.warning("Get toplists failed", exc_info=True, extra={"platform": platform})
        return []


def get_top_list_songs(id: str, platform: Platform) -> List[PlaylistSong]:
    try:
        data = _get_data(_build_url(source=platform, id=id, type="toplist"))
        if data and data.get("list"):
            return _parse_items(PlaylistSong, data["list"])
        return []
    except Exception:
        logger.warning("Get toplist songs failed", exc_info=True, extra={"platform": platform, "id": id})
        return []


def get_external_playlist(id: str, platform: Platform) -> Optional[ExternalPlaylist]:
    """Look up a playlist hosted on one of the platforms."""
    try:
        data = _get_data(_build_url(source=platform, id=id, type="playlist"))
        if data:
            info = data.get("info")
            return ExternalPlaylist(
                info=PlaylistInfo.model_validate(info) if info is not None else None,
                songs=_parse_items(PlaylistSong, data.get("list") or []),
            )
        return None
    except Exception:
        logger.warning("Get playlist failed", exc_info=True, extra={"platform": platform, "id": id})
        return None

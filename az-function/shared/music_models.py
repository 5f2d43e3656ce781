"""Typed shapes parsed out of the upstream ``{code, data}`` envelope."""

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Platform = Literal["netease", "kuwo", "qq"]
AudioQuality = Literal["128k", "320k", "flac", "flac24bit"]


class _UpstreamModel(BaseModel):
    # Upstream ids arrive as numbers for some platforms and strings for others.
    model_config = ConfigDict(coerce_numbers_to_str=True, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _null_is_absent(cls, data: Any) -> Any:
        # Upstream sends null for fields a platform does not have; fall back to the default.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class SearchResult(_UpstreamModel):
    id: str
    name: str
    artist: str = ""
    album: Optional[str] = None
    platform: str
    pic: Optional[str] = None


class SongInfo(_UpstreamModel):
    name: str = ""
    artist: str = ""
    album: str = ""
    url: str = ""
    pic: str = ""
    lrc: str = ""


class TopList(_UpstreamModel):
    id: str
    name: str
    update_frequency: Optional[str] = Field(default=None, alias="updateFrequency")


class PlaylistInfo(_UpstreamModel):
    name: str = ""
    author: Optional[str] = None


class PlaylistSong(_UpstreamModel):
    id: str
    name: str
    types: Optional[List[str]] = None


class ExternalPlaylist(_UpstreamModel):
    info: Optional[PlaylistInfo] = None
    songs: List[PlaylistSong] = Field(default_factory=list)

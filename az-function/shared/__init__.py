"""Shared utilities for the music Azure Function proxy.

Currently exposes:
    proxy_music_request - same-origin relay of the upstream music API, with
    manual play-url redirect resolution and cover proxying.

The client wrapper lives in ``shared.music_client``.
"""

from .music_proxy import proxy_music_request  # re-export for convenience

__all__ = ["proxy_music_request"]

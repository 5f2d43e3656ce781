import azure.functions as func
from ..shared.music_proxy import proxy_music_request

async def main(req: func.HttpRequest) -> func.HttpResponse:
    # Upstream search/info/lyrics/cover/stream, all behind /api/music
    return await proxy_music_request(req)

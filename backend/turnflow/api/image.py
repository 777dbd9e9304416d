from __future__ import annotations

from fastapi import APIRouter, Depends

from turnflow.api.errors import to_http_exception
from turnflow.core.errors import TurnflowError
from turnflow.schemas.media import ImageRequest, ImageResponse
from turnflow.services.component_factory import ComponentFactory, get_component_factory

router = APIRouter(prefix="/api/image", tags=["image"])


@router.post("/generate", response_model=ImageResponse)
async def generate_image(
    payload: ImageRequest,
    factory: ComponentFactory = Depends(get_component_factory),
) -> ImageResponse:
    """Generate one image; chat-only vendors answer 400."""

    try:
        provider = factory.provider(payload.provider)
        image = await provider.image_model().generate(payload.prompt)
    except TurnflowError as exc:
        raise to_http_exception(exc) from exc
    return ImageResponse(url=image.url, b64_json=image.b64_json, revised_prompt=image.revised_prompt)

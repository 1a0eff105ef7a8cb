"""generateImage: text-to-image through the OpenAI images endpoint."""

from typing import Literal

import httpx
from pydantic import BaseModel, Field

from chorus.logging import get_logger
from chorus.services.redact import hash_text, safe_kv
from chorus.services.tools.registry import Tool, ToolContext, ToolError

logger = get_logger(__name__)

OPENAI_IMAGES_URL = "https://api.openai.com/v1/images/generations"
IMAGE_MODEL = "dall-e-3"
IMAGE_TIMEOUT_S = 90.0


class GenerateImageInput(BaseModel):
    prompt: str = Field(description="Detailed description of the image to generate")
    size: Literal["1024x1024", "1792x1024", "1024x1792"] = "1024x1024"


class GenerateImageTool(Tool):
    name = "generateImage"
    description = "Generate an image from a detailed text description."
    input_model = GenerateImageInput

    async def execute(self, args: GenerateImageInput, ctx: ToolContext) -> dict:
        api_key = ctx.settings.openai_api_key
        if not api_key:
            raise ToolError("Image generation is not configured")

        ctx.check_abort()
        try:
            response = await ctx.http_client.post(
                OPENAI_IMAGES_URL,
                json={
                    "model": IMAGE_MODEL,
                    "prompt": args.prompt,
                    "size": args.size,
                    "n": 1,
                    "response_format": "url",
                },
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=IMAGE_TIMEOUT_S,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "image_generation_failed",
                **safe_kv(prompt_sha256=hash_text(args.prompt), error=str(e)),
            )
            raise ToolError("Image generation failed") from e
        ctx.check_abort()

        image = response.json()["data"][0]
        url = image["url"]
        await ctx.writer.write(
            {"type": "file", "url": url, "mediaType": "image/png", "filename": "image.png"}
        )
        logger.info("image_generated", size=args.size)
        return {
            "imageUrl": url,
            "prompt": image.get("revised_prompt") or args.prompt,
        }

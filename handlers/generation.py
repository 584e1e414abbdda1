"""
Generation handlers - node kinds backed by an external generation service.
生成类处理器 —— 由外部生成服务支撑的节点类型。

  TextGenerationHandler:  OpenAI-compatible chat completions (AsyncOpenAI)
  MediaGenerationHandler: image / video / audio through the queue backend

  TextGenerationHandler：  OpenAI 兼容的 chat completions 接口（AsyncOpenAI）
  MediaGenerationHandler： 通过队列后端生成图像 / 视频 / 音频
"""

from __future__ import annotations

import logging
from typing import Any, Union

from openai import AsyncOpenAI

import config
from handlers.base import BaseHandler, ProgressCallback, require_text, text_of, url_of
from handlers.queue_client import MediaBackendError, QueueClient
from schema import (
    AudioGenerateParams,
    ImageGenerateParams,
    NodeKind,
    NodeOutput,
    TextGenerateParams,
    VideoGenerateParams,
)

logger = logging.getLogger(__name__)


class TextGenerationHandler(BaseHandler):
    """
    Chat-completion text generation.
    基于 chat completion 的文本生成。

    The prompt comes from the `prompt` input port when connected, otherwise
    from the node's static prompt param.
    提示词优先取自已连接的 `prompt` 输入端口，否则取节点的静态 prompt 参数。
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ):
        self.model = model or config.LLM_MODEL  # 默认模型名称
        self._client = client or AsyncOpenAI(
            base_url=config.LLM_BASE_URL,  # API 端点地址
            api_key=config.LLM_API_KEY,    # API 密钥
        )

    @property
    def kind(self) -> NodeKind:
        return NodeKind.GENERATE_TEXT

    async def operate(self, inputs: dict[str, Any], params: TextGenerateParams, progress: ProgressCallback | None = None) -> NodeOutput:
        prompt = require_text(inputs, "prompt")
        messages: list[dict[str, Any]] = []
        if params.system_prompt:
            messages.append({"role": "system", "content": params.system_prompt})
        messages.append({"role": "user", "content": prompt})

        model = params.model or self.model
        resp = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
        )
        text = resp.choices[0].message.content or ""
        if not text.strip():
            raise ValueError(f"Model {model} returned an empty completion")

        usage = getattr(resp, "usage", None)
        metadata: dict[str, Any] = {"model": model}
        if usage is not None:
            metadata["usage"] = {
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
            }
        return NodeOutput(type="text", data=text, metadata=metadata)


# ----------------------------------------------------------------------
# Media generation
# 媒体生成
# ----------------------------------------------------------------------

_DEFAULT_MODELS = {
    NodeKind.GENERATE_IMAGE: lambda: config.IMAGE_MODEL,
    NodeKind.GENERATE_VIDEO: lambda: config.VIDEO_MODEL,
    NodeKind.GENERATE_AUDIO: lambda: config.AUDIO_MODEL,
}

MediaParams = Union[ImageGenerateParams, VideoGenerateParams, AudioGenerateParams]

_OUTPUT_TYPES = {
    NodeKind.GENERATE_IMAGE: "image",
    NodeKind.GENERATE_VIDEO: "video",
    NodeKind.GENERATE_AUDIO: "audio",
}


def extract_media(result: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """
    Pull the primary media URL (plus metadata) out of a backend result.
    从后端结果中提取主媒体 URL 及元数据。

    Recognised shapes / 支持的结果结构：
      {"images": [{"url", "width", "height"}, ...]}
      {"image" | "video" | "audio_file" | "audio": {"url", ...}}
      {"url": "..."}
    """
    images = result.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict) and images[0].get("url"):
        first = images[0]
        metadata = {k: v for k, v in first.items() if k != "url"}
        if len(images) > 1:
            metadata["images"] = [img.get("url") for img in images if isinstance(img, dict)]
        return first["url"], metadata

    for key in ("image", "video", "audio_file", "audio"):
        item = result.get(key)
        if isinstance(item, dict) and item.get("url"):
            return item["url"], {k: v for k, v in item.items() if k != "url"}

    if isinstance(result.get("url"), str):
        return result["url"], {}

    raise MediaBackendError(f"Backend result has no media URL (keys: {sorted(result)})")


class MediaGenerationHandler(BaseHandler):
    """
    Image / video / audio generation through QueueClient.
    通过 QueueClient 生成图像 / 视频 / 音频。
    """

    def __init__(self, kind: NodeKind, client: QueueClient, model: str | None = None):
        if kind not in _OUTPUT_TYPES:
            raise ValueError(f"MediaGenerationHandler cannot serve {kind.value}")
        self._kind = kind
        self._client = client
        self._model = model

    @property
    def kind(self) -> NodeKind:
        return self._kind

    def build_arguments(self, inputs: dict[str, Any], params: MediaParams) -> dict[str, Any]:
        """
        Backend arguments for one job; raises ValueError on missing inputs.
        构造单个任务的后端参数；缺少必需输入时抛出 ValueError。
        """
        if self._kind == NodeKind.GENERATE_IMAGE:
            return {
                "prompt": require_text(inputs, "prompt"),
                "num_inference_steps": params.steps,
                "num_images": params.num_images,
                "aspect_ratio": params.aspect_ratio,
            }

        if self._kind == NodeKind.GENERATE_VIDEO:
            image_url = url_of(inputs.get("image"))
            if not image_url:
                raise ValueError("Missing required input 'image' (no image URL)")
            arguments: dict[str, Any] = {
                "image_url": image_url,
                "duration": params.duration,
                "aspect_ratio": params.aspect_ratio,
            }
            prompt = text_of(inputs.get("prompt"))
            if prompt:
                arguments["prompt"] = prompt
            return arguments

        return {
            "prompt": require_text(inputs, "prompt"),
            "seconds_total": params.duration,
        }

    async def operate(self, inputs: dict[str, Any], params: MediaParams, progress: ProgressCallback | None = None) -> NodeOutput:
        arguments = self.build_arguments(inputs, params)
        model = getattr(params, "model", None) or self._model or _DEFAULT_MODELS[self._kind]()

        result = await self._client.run(model, arguments, progress)
        url, metadata = extract_media(result)
        metadata["model"] = model
        logger.info("[Media] %s finished: %s", self._kind.value, url)
        return NodeOutput(type=_OUTPUT_TYPES[self._kind], url=url, metadata=metadata)

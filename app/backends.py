import base64
import binascii
import io
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pypdf import PdfReader

from .config import AppSettings
from .schemas import AttachedFile, Message


logger = logging.getLogger("uvicorn.error")

DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful assistant."
TEXT_MIME_MARKERS = ("json", "javascript", "typescript", "xml")
TEXT_MIME_EXACT = {"application/x-sh", "application/sql"}
GEMINI_INLINE_TYPES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/heic",
    "image/heif",
    "application/pdf",
}
CONTEXT_EXCEEDED_MESSAGE = (
    "Error: The context size of the model was exceeded. "
    "Please try reducing the number/size of attachments or conversation history."
)
REQUEST_TOO_LARGE_MESSAGE = "Error: Request too large. Please reduce the size of your attachments."


class BackendError(RuntimeError):
    pass


class ContextWindowExceeded(BackendError):
    """Raised when a backend rejects a request for being too large."""

    def __init__(self, message: str = CONTEXT_EXCEEDED_MESSAGE):
        super().__init__(message)
        self.user_message = message


def merge_consecutive_roles(turns: List[Dict[str, str]]) -> List[Dict[str, str]]:
    if len(turns) <= 1:
        return [dict(t) for t in turns]
    merged: List[Dict[str, str]] = []
    current = dict(turns[0])
    for turn in turns[1:]:
        if turn["role"] == current["role"]:
            current["content"] += "\n\n" + turn["content"]
        else:
            merged.append(current)
            current = dict(turn)
    merged.append(current)
    return merged


def format_history(history: Sequence[Message], model_id: str) -> List[Dict[str, str]]:
    """Flatten transcript messages into role/content turns as seen by one model."""
    turns: List[Dict[str, str]] = []
    for msg in history:
        text = msg.content
        if msg.role == "assistant" and msg.responses:
            resp = msg.responses.get(model_id)
            if resp is None:
                resp = next((r for r in msg.responses.values() if r.status == "success"), None)
            text = resp.text if resp else ""
        turns.append({"role": "user" if msg.role == "user" else "assistant", "content": text or ""})
    return merge_consecutive_roles(turns)


def _data_payload(file: AttachedFile) -> str:
    data = file.base64 or ""
    if "," in data:
        data = data.split(",", 1)[1]
    return data


def is_text_like(mime: str) -> bool:
    return mime.startswith("text/") or any(m in mime for m in TEXT_MIME_MARKERS) or mime in TEXT_MIME_EXACT


def decode_attachment_text(file: AttachedFile) -> Optional[str]:
    if not is_text_like(file.type):
        return None
    try:
        return base64.b64decode(_data_payload(file)).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        logger.warning("Failed to decode attachment %s", file.name)
        return None


def pdf_attachment_text(file: AttachedFile, max_chars: int = 20000) -> Optional[str]:
    if file.type != "application/pdf":
        return None
    try:
        reader = PdfReader(io.BytesIO(base64.b64decode(_data_payload(file))))
        text = "\n".join((page.extract_text() or "") for page in reader.pages)
    except Exception as exc:
        logger.warning("Failed to read PDF attachment %s: %s", file.name, exc)
        return None
    return text[:max_chars] if text.strip() else None


def attachment_as_text(file: AttachedFile) -> str:
    text = decode_attachment_text(file) or file.content or pdf_attachment_text(file)
    if text:
        return f"\n\n[Attachment: {file.name}]\n{text}"
    return f"\n\n[Attachment: {file.name}] (Content type {file.type} not supported for direct analysis)"


def _extract_error_detail(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
        if isinstance(data, dict):
            return data
    except Exception:
        pass
    return {}


def _error_message(detail: Dict[str, Any], fallback: str) -> str:
    err = detail.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str) and err:
        return err
    return fallback


class BackendAdapter:
    """One backend family: normalized request in, text out."""

    family = "base"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str:
        raise NotImplementedError


class ChatCompletionsAdapter(BackendAdapter):
    family = "chat_completions"

    def __init__(self, client: httpx.AsyncClient, endpoint: Optional[str], api_key: Optional[str], api_version: str):
        super().__init__(client)
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.api_version = api_version

    def _require_config(self) -> None:
        if not self.api_key or not self.endpoint:
            raise BackendError("Azure API Key or Endpoint not configured.")

    def build_messages(
        self,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str],
        history: Sequence[Message],
        history_model_id: str,
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_instruction or DEFAULT_SYSTEM_INSTRUCTION}
        ]
        messages.extend(format_history(history, history_model_id))
        user_content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for file in attachments:
            if file.type.startswith("image/"):
                user_content.append({"type": "image_url", "image_url": {"url": file.base64}})
            else:
                user_content.append({"type": "text", "text": attachment_as_text(file)})
        messages.append({"role": "user", "content": user_content})
        return messages

    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str:
        self._require_config()
        deployment = model_id.removeprefix("azure-")
        payload: Dict[str, Any] = {
            "messages": self.build_messages(prompt, attachments, system_instruction, history, model_id)
        }
        if "gpt-5" in deployment:
            payload.update({"max_completion_tokens": 2000, "temperature": 1})
        else:
            payload.update({"max_tokens": 2000, "temperature": 0.7})
        url = f"{self.endpoint}/openai/deployments/{deployment}/chat/completions"
        resp = await self.client.post(
            url,
            params={"api-version": self.api_version},
            headers={"api-key": self.api_key or ""},
            json=payload,
        )
        if resp.status_code >= 400:
            detail = _extract_error_detail(resp)
            err = detail.get("error") if isinstance(detail.get("error"), dict) else {}
            if resp.status_code == 413 or err.get("code") == "context_length_exceeded":
                raise ContextWindowExceeded(CONTEXT_EXCEEDED_MESSAGE)
            raise BackendError(_error_message(detail, f"Azure Error: {resp.status_code} {resp.reason_phrase}"))
        data = resp.json()
        choices = data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        return content or "No response from Azure."


class EmbeddingsAdapter(BackendAdapter):
    family = "embeddings"

    def __init__(self, client: httpx.AsyncClient, endpoint: Optional[str], api_key: Optional[str], api_version: str):
        super().__init__(client)
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.api_version = api_version

    async def embed(self, model_id: str, text: str) -> List[float]:
        if not self.api_key or not self.endpoint:
            raise BackendError("Azure API Key or Endpoint not configured.")
        deployment = model_id.removeprefix("azure-")
        resp = await self.client.post(
            f"{self.endpoint}/openai/deployments/{deployment}/embeddings",
            params={"api-version": self.api_version},
            headers={"api-key": self.api_key},
            json={"input": text},
        )
        if resp.status_code >= 400:
            detail = _extract_error_detail(resp)
            raise BackendError(_error_message(detail, f"Azure Embedding Error: {resp.status_code} {resp.reason_phrase}"))
        return resp.json()["data"][0]["embedding"]

    async def call(self, model_id, prompt, attachments, system_instruction=None, history=()) -> str:
        embedding = await self.embed(model_id, prompt)
        deployment = model_id.removeprefix("azure-")
        return f"```embed:{deployment}\n{json.dumps(embedding, indent=2)}\n```"


class ImageGenerationAdapter(BackendAdapter):
    family = "images"

    def __init__(self, client: httpx.AsyncClient, endpoint: Optional[str], api_key: Optional[str], api_version: str):
        super().__init__(client)
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.api_version = api_version

    async def call(self, model_id, prompt, attachments, system_instruction=None, history=()) -> str:
        if not self.api_key or not self.endpoint:
            raise BackendError("Azure API Key or Endpoint not configured.")
        deployment = model_id.removeprefix("azure-")
        resp = await self.client.post(
            f"{self.endpoint}/openai/deployments/{deployment}/images/generations",
            params={"api-version": self.api_version},
            headers={"api-key": self.api_key},
            json={"prompt": prompt, "n": 1, "size": "1024x1024"},
        )
        if resp.status_code >= 400:
            detail = _extract_error_detail(resp)
            raise BackendError(_error_message(detail, f"Azure DALL-E Error: {resp.status_code} {resp.reason_phrase}"))
        items = resp.json().get("data") or []
        image_url = items[0].get("url") if items else None
        if not image_url:
            return "No image generated."
        return f"![Generated Image]({image_url})"


class MessagesAdapter(BackendAdapter):
    family = "messages"

    def __init__(self, client: httpx.AsyncClient, endpoint: Optional[str]):
        super().__init__(client)
        self.endpoint = endpoint

    def build_messages(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        history: Sequence[Message],
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [t for t in format_history(history, model_id) if t["content"]]
        user_content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for file in attachments:
            if file.type.startswith("image/"):
                user_content.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": file.type, "data": _data_payload(file)},
                    }
                )
            else:
                user_content.append({"type": "text", "text": attachment_as_text(file)})
        messages.append({"role": "user", "content": user_content})
        return messages

    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str:
        if not self.endpoint:
            raise BackendError("Claude Endpoint not configured.")
        payload = {
            "model": model_id,
            "system": system_instruction or DEFAULT_SYSTEM_INSTRUCTION,
            "messages": self.build_messages(model_id, prompt, attachments, history),
            "max_tokens": 4096,
            "temperature": 0.7,
        }
        resp = await self.client.post(self.endpoint, json=payload)
        if resp.status_code >= 400:
            detail = _extract_error_detail(resp)
            err = detail.get("error") if isinstance(detail.get("error"), dict) else {}
            if resp.status_code == 413 or err.get("type") == "overloaded_error":
                raise ContextWindowExceeded(REQUEST_TOO_LARGE_MESSAGE)
            raise BackendError(_error_message(detail, f"Claude API Error: {resp.status_code} {resp.reason_phrase}"))
        data = resp.json()
        if isinstance(data, dict):
            content = data.get("content")
            if isinstance(content, list):
                for part in content:
                    if isinstance(part, dict) and part.get("type") == "text":
                        return part.get("text") or ""
            return data.get("text") or data.get("completion") or "No response generated by Claude."
        if isinstance(data, str):
            return data
        return "No response generated by Claude."


class GenerateContentAdapter(BackendAdapter):
    family = "generate_content"

    def __init__(self, client: httpx.AsyncClient, base_url: str, api_key: Optional[str], default_model: str):
        super().__init__(client)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model

    def build_contents(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        history: Sequence[Message],
    ) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = [
            {"role": "user" if t["role"] == "user" else "model", "parts": [{"text": t["content"]}]}
            for t in format_history(history, model_id)
        ]
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for file in attachments:
            if file.type in GEMINI_INLINE_TYPES:
                parts.append({"inlineData": {"data": _data_payload(file), "mimeType": file.type}})
            else:
                parts.append({"text": attachment_as_text(file)})
        contents.append({"role": "user", "parts": parts})
        return contents

    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str:
        if not self.api_key:
            raise BackendError("Gemini API Key not configured.")
        model = model_id if model_id.startswith(("gemini-", "veo-")) else self.default_model
        payload = {
            "contents": self.build_contents(model_id, prompt, attachments, history),
            "systemInstruction": {"parts": [{"text": system_instruction or DEFAULT_SYSTEM_INSTRUCTION}]},
        }
        resp = await self.client.post(
            f"{self.base_url}/models/{model}:generateContent",
            headers={"x-goog-api-key": self.api_key},
            json=payload,
        )
        if resp.status_code >= 400:
            detail = _extract_error_detail(resp)
            message = _error_message(detail, f"Gemini Error: {resp.status_code} {resp.reason_phrase}")
            if resp.status_code == 413 or "token count" in message.lower():
                raise ContextWindowExceeded(CONTEXT_EXCEEDED_MESSAGE)
            raise BackendError(message)
        data = resp.json()
        texts: List[str] = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if isinstance(part, dict) and part.get("text"):
                    texts.append(part["text"])
            if texts:
                break
        return "".join(texts) or "No response generated."


class BackendRegistry:
    """Routes a model id to its adapter family by provider prefix."""

    def __init__(self, settings: AppSettings, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(
            timeout=120,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )
        self.configure(settings)

    def configure(self, settings: AppSettings) -> None:
        self.chat = ChatCompletionsAdapter(
            self.client, settings.azure_endpoint, settings.azure_api_key, settings.azure_chat_api_version
        )
        self.embeddings = EmbeddingsAdapter(
            self.client, settings.azure_endpoint, settings.azure_api_key, settings.azure_embedding_api_version
        )
        self.images = ImageGenerationAdapter(
            self.client, settings.azure_endpoint, settings.azure_api_key, settings.azure_image_api_version
        )
        self.messages = MessagesAdapter(self.client, settings.claude_endpoint)
        self.gemini = GenerateContentAdapter(
            self.client, settings.gemini_base_url, settings.gemini_api_key, settings.default_gemini_model
        )

    def resolve(self, model_id: str) -> BackendAdapter:
        if model_id.startswith("azure-"):
            deployment = model_id.removeprefix("azure-")
            if deployment.startswith("text-embedding"):
                return self.embeddings
            if deployment.startswith("dall-e"):
                return self.images
            return self.chat
        if model_id.startswith("claude-"):
            return self.messages
        return self.gemini

    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str:
        adapter = self.resolve(model_id)
        return await adapter.call(model_id, prompt, attachments, system_instruction, history)

    async def embed(self, model_id: str, text: str) -> List[float]:
        return await self.embeddings.embed(model_id, text)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()

"""Gemini web free tier, authenticated with browser session cookies.

Before any chat call the adapter warms up a session (collecting cookies)
and scrapes a short-lived access token from the app HTML. A missing,
stale or rejected token re-runs the warm-up, bounded by
``max_warmup_attempts``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import re
import time
from typing import TYPE_CHECKING, Any

from switchboard.capabilities import ModelInfo, ProviderCapabilities, ProviderInfo
from switchboard.config import GEMINI_COOKIE
from switchboard.errors import ParseError, RequestBuildError, ServiceError
from switchboard.models import Role, ThinkingContent
from switchboard.providers.base import BaseAIService, WireRequest
from switchboard.registry import AIServiceFactory
from switchboard.response import AIResponse, FinishReason
from switchboard.session import ConversationState, SessionStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.config import ProviderConfig
    from switchboard.models import Attachment
    from switchboard.request import AIRequest

logger = logging.getLogger(__name__)

_WARMUP_URL = "https://www.google.com"
_GENERATE_PATH = "/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate"
_UPLOAD_URL = "https://content-push.googleapis.com/upload"
_PUSH_ID = "feeds/mcudyrk2a4khkz"
_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
_ACCESS_TOKEN_PATTERNS = (
    re.compile(r'"SNlM0e":"([^"]+)"'),
    re.compile(r"'SNlM0e':'([^']+)'"),
    re.compile(r'SNlM0e:"([^"]+)"'),
    re.compile(r"SNlM0e:'([^']+)'"),
)
# Selects the backend model; unknown models fall back to the account default.
_MODEL_HEADERS: dict[str, str] = {
    "gemini-2.5-flash": '[1,null,null,null,"71c2d248d3b102ff"]',
    "gemini-2.5-pro": '[1,null,null,null,"2525e3954d185b3c"]',
    "gemini-2.0-flash": '[1,null,null,null,"f299729663a2343f"]',
}
_META_KEY = "conversation_meta"

CAPABILITIES = ProviderCapabilities(
    streaming=True,
    vision=True,
    tools=False,
    web_search=True,
    thinking=True,
    multimodal=True,
    max_tokens=1_048_576,
    supported_formats=("text", "image"),
)


def extract_access_token(html: str) -> str | None:
    for pattern in _ACCESS_TOKEN_PATTERNS:
        m = pattern.search(html)
        if m:
            return m.group(1)
    return None


def _at(value: Any, *path: int) -> Any:
    """Index into nested lists, returning None on any missing step."""
    for index in path:
        if not isinstance(value, list) or len(value) <= index:
            return None
        value = value[index]
    return value


def parse_stream_generate(body: str) -> tuple[str, str | None, list[Any] | None]:
    """Return ``(text, thoughts, conversation_meta)`` from a StreamGenerate body.

    The body is a sequence of length-prefixed JSON arrays. Each envelope
    entry holds a JSON-encoded payload at index 2; the payload carries the
    conversation metadata at ``[1]`` and the candidates at ``[4]``.
    """
    text = ""
    thoughts: str | None = None
    meta: list[Any] | None = None
    found = False

    for line in body.splitlines():
        line = line.strip()
        if not line.startswith("["):
            continue
        try:
            envelope = json.loads(line)
        except ValueError:
            continue
        if not isinstance(envelope, list):
            continue
        for entry in envelope:
            raw = _at(entry, 2)
            if not isinstance(raw, str):
                continue
            try:
                payload = json.loads(raw)
            except ValueError:
                continue
            candidate_meta = _at(payload, 1)
            if isinstance(candidate_meta, list) and candidate_meta:
                meta = candidate_meta
            candidate_text = _at(payload, 4, 0, 1, 0)
            if isinstance(candidate_text, str):
                text = candidate_text
                found = True
                candidate_thoughts = _at(payload, 4, 0, 37, 0, 0)
                if isinstance(candidate_thoughts, str) and candidate_thoughts:
                    thoughts = candidate_thoughts

    if not found:
        raise ParseError("Gemini web response contained no candidates")
    return text, thoughts, meta


def _upload_name(attachment: Attachment) -> str:
    return attachment.filename or f"upload.{attachment.type or 'bin'}"


def _cookies_from(response: httpx.Response) -> dict[str, str]:
    cookies: dict[str, str] = {}
    for header in response.headers.get_list("set-cookie"):
        name, sep, value = header.split(";", 1)[0].partition("=")
        if sep and name.strip():
            cookies[name.strip()] = value.strip()
    return cookies


class GeminiCookieService(BaseAIService):
    """Adapter for the Gemini web app's StreamGenerate endpoint."""

    reauth_statuses = frozenset({401, 403})
    default_model = "gemini-2.5-flash"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        sessions: SessionStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Any = time.monotonic,
    ) -> None:
        """Seed the cookie jar from ``psid``/``psidts``; no network until first use."""
        super().__init__(config, transport=transport)
        self.sessions = sessions or SessionStore()
        self._clock = clock
        self._cookies: dict[str, str] = {}
        if config.get("psid"):
            self._cookies["__Secure-1PSID"] = str(config.get("psid"))
        if config.get("psidts"):
            self._cookies["__Secure-1PSIDTS"] = str(config.get("psidts"))
        self._access_token: str | None = None
        self._token_fetched_at = 0.0
        self._token_lock = asyncio.Lock()
        self._token_ttl_s = float(config.get("token_ttl_s", 600))
        self._max_warmup_attempts = max(1, int(config.get("max_warmup_attempts", 2)))

    @property
    def capabilities(self) -> ProviderCapabilities:
        return CAPABILITIES

    def _app_url(self) -> str:
        return f"{(self.config.base_url or '').rstrip('/')}/app"

    def _cookie_header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    def _token_is_fresh(self) -> bool:
        if not self._access_token:
            return False
        return (self._clock() - self._token_fetched_at) < self._token_ttl_s

    async def _get_page(self, url: str) -> httpx.Response:
        wire = WireRequest(
            method="GET",
            url=url,
            headers={"Cookie": self._cookie_header(), "User-Agent": _USER_AGENT},
        )
        response = await self.send_wire(wire, phase="warmup")
        self._cookies.update(_cookies_from(response))
        return response

    async def _warm_up(self) -> str | None:
        """Establish cookies and return the access token embedded in the app page."""
        await self._get_page(_WARMUP_URL)
        page = await self._get_page(self._app_url())
        return extract_access_token(page.text)

    async def ensure_access_token(self) -> str:
        async with self._token_lock:
            cached = self._access_token
            if cached and self._token_is_fresh():
                return cached

            last_error: ServiceError | None = None
            for attempt in range(1, self._max_warmup_attempts + 1):
                try:
                    token = await self._warm_up()
                except ServiceError as exc:
                    logger.warning("Gemini web warm-up attempt %d failed: %s", attempt, exc)
                    last_error = exc
                    continue
                if token:
                    self._access_token = token
                    self._token_fetched_at = self._clock()
                    logger.debug("Gemini web access token refreshed")
                    return token
                logger.warning("Gemini web warm-up attempt %d found no access token", attempt)

            raise RequestBuildError(
                f"Failed to initialize Gemini web session after "
                f"{self._max_warmup_attempts} warm-up attempts",
                hint="Refresh the __Secure-1PSID / __Secure-1PSIDTS cookies.",
            ) from last_error

    async def refresh_credentials(self) -> None:
        async with self._token_lock:
            self._access_token = None

    @asynccontextmanager
    async def request_scope(self, request: AIRequest) -> AsyncIterator[ConversationState]:
        async with self.sessions.session(request.session_id) as state:
            yield state

    @staticmethod
    def _prompt(request: AIRequest, *, continuing: bool) -> str:
        """Prompt text for one StreamGenerate call.

        A continuing conversation already lives server-side, so only the
        latest user message is sent. A first turn sends the system and user
        text joined by blank lines.
        """
        if continuing:
            for m in reversed(request.messages):
                if m.role == Role.USER and m.content:
                    return m.content
            return ""
        texts = [
            m.content
            for m in request.messages
            if m.role in (Role.SYSTEM, Role.USER) and m.content
        ]
        return "\n\n".join(texts)

    @staticmethod
    def _attachments(request: AIRequest) -> list[Attachment]:
        found = list(request.attachments)
        for m in reversed(request.messages):
            if m.role == Role.USER:
                found.extend(m.attachments)
                break
        return found

    async def upload_attachment(self, attachment: Attachment) -> str:
        """Push *attachment* to the upload endpoint and return its identifier."""
        if attachment.data is None:
            raise RequestBuildError(
                "Gemini web attachments need inline data",
                hint="Remote URLs are not fetched; attach the bytes instead.",
            )
        name = _upload_name(attachment)
        wire = WireRequest(
            method="POST",
            url=str(self.config.get("upload_url", _UPLOAD_URL)),
            headers={
                "Push-ID": _PUSH_ID,
                "Cookie": self._cookie_header(),
                "User-Agent": _USER_AGENT,
            },
            files={"file": (name, attachment.data, "application/octet-stream")},
        )
        response = await self.send_wire(wire, phase="upload")
        identifier = response.text.strip()
        if not identifier:
            raise ParseError(f"Gemini web upload of {name!r} returned no identifier")
        logger.debug("Uploaded %s to Gemini web", name)
        return identifier

    async def build_request(self, request: AIRequest, scope: Any) -> WireRequest:
        token = await self.ensure_access_token()
        meta = scope.metadata.get(_META_KEY) if scope is not None else None
        prompt = self._prompt(request, continuing=meta is not None)
        uploaded = [
            [[[await self.upload_attachment(a)]], _upload_name(a)]
            for a in self._attachments(request)
        ]
        first = [prompt, 0, None, uploaded] if uploaded else [prompt]
        inner = [first, None, meta]
        headers = {
            "Content-Type": "application/x-www-form-urlencoded;charset=utf-8",
            "Origin": "https://gemini.google.com",
            "Referer": "https://gemini.google.com/",
            "User-Agent": _USER_AGENT,
            "X-Same-Domain": "1",
            "Accept": "*/*",
            "Cookie": self._cookie_header(),
        }
        model_header = _MODEL_HEADERS.get(request.model)
        if model_header:
            headers["x-goog-ext-525001261-jspb"] = model_header
        return WireRequest(
            method="POST",
            url=f"{(self.config.base_url or '').rstrip('/')}{_GENERATE_PATH}",
            headers=headers,
            data={"at": token, "f.req": json.dumps([None, json.dumps(inner)])},
            stream=True,
        )

    async def iter_stream(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AsyncIterator[AIResponse]:
        # The body only makes sense once complete; emit it as a single chunk.
        body = (await response.aread()).decode("utf-8", errors="replace")
        text, thoughts, meta = parse_stream_generate(body)
        if meta is not None and scope is not None:
            scope.metadata[_META_KEY] = meta
        yield AIResponse.chunk(
            request.id,
            text,
            thinking=ThinkingContent(thoughts) if thoughts else None,
            finish_reason=FinishReason.STOP,
        )

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(id=model, display_name=model, provider=self.provider, capabilities=CAPABILITIES)
            for model in _MODEL_HEADERS
        ]

    async def probe_health(self) -> bool:
        """Healthy when a session can be warmed up; no chat call is spent."""
        await self.ensure_access_token()
        return True

    def end_session(self, session_id: str | None) -> bool:
        return self.sessions.end_session(session_id)

    async def shutdown(self) -> None:
        self.sessions.clear()
        await super().shutdown()


class GeminiCookieServiceFactory(AIServiceFactory):
    @property
    def provider(self) -> str:
        return GEMINI_COOKIE

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            provider=GEMINI_COOKIE,
            display_name="Google Gemini (Free)",
            description="Gemini web app authenticated with browser session cookies",
            capabilities=CAPABILITIES,
        )

    def _create(self, config: ProviderConfig) -> GeminiCookieService:
        return GeminiCookieService(config, transport=self._transport)

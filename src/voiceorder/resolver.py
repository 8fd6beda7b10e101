"""
Intent/state resolver backed by an OpenAI chat model.

Given the caller's transcript and the current order snapshot, the model returns
a JSON control object: an action tag, a reply, a confidence score and optional
slot values (category, item, modifiers, quantity).

The call is bounded by a timeout. On timeout, transport error or malformed JSON
the resolver returns `fallback_result(...)` instead of raising, so the caller
always gets something speakable.
"""

import asyncio
import json
import time
from typing import Any, Dict, List, Optional, Tuple

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.voiceorder.config import get_config
from src.voiceorder.menu import DEFAULT_MENU, MenuCategory, format_dollars, normalize

logger = structlog.get_logger(__name__)

FALLBACK_PROMPT = "Sorry, my mistake there. Could you say that one more time?"
FALLBACK_CONFIDENCE = 0.1

KNOWN_ACTIONS = frozenset({
    "choose_category",
    "choose_item",
    "choose_modifiers",
    "collecting",
    "info",
    "update_quantity",
    "reset",
    "repeat_last",
    "help",
    "greeting",
    "acknowledge",
    "smalltalk",
    "clarify",
    "recommend",
    "unrecognized_item",
    "confirm",
    "finalize",
    "cancel",
    "unknown",
})

# Only questions whose answer does not depend on the order may be cached.
CACHEABLE_KEYWORDS = (
    "menu",
    "categories",
    "what do you have",
    "thank you",
    "thanks",
    "bestseller",
    "most selling",
    "popular",
)

# Actions whose result carries or mutates order state; never cached.
ORDER_ACTIONS = frozenset({
    "choose_item",
    "choose_modifiers",
    "collecting",
    "update_quantity",
    "reset",
    "confirm",
    "finalize",
    "cancel",
})


class ResolverError(Exception):
    """Raised when the model output cannot be turned into a ResolverResult."""
    pass


class ResolverResult(BaseModel):
    """Structured action returned by the resolver."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str = Field(default="unknown", description="Action tag for the dialogue layer")
    reply: str = Field(default="", alias="prompt", description="Reply to speak to the caller")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    order: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Updated order state ({'items': [...]}) when the action changes the order",
    )
    category: Optional[str] = None
    item: Optional[str] = None
    modifiers: Optional[Dict[str, List[str]]] = None
    item_queried: Optional[str] = Field(default=None, alias="itemQueried")
    new_quantity: Optional[int] = Field(default=None, alias="newQuantity")


def fallback_result(order: Optional[Dict[str, Any]] = None) -> ResolverResult:
    """Canned low-confidence "please repeat" result."""
    return ResolverResult(
        action="unknown",
        reply=FALLBACK_PROMPT,
        confidence=FALLBACK_CONFIDENCE,
        order=order,
    )


def build_system_prompt(menu: Tuple[MenuCategory, ...] = DEFAULT_MENU) -> str:
    menu_lines = "\n".join(
        f"- {c.name}: " + "; ".join(f"{i.name} (${format_dollars(i.price_cents)})" for i in c.items)
        for c in menu
    )
    actions = ", ".join(sorted(KNOWN_ACTIONS))
    return f"""You are a warm, patient food-ordering phone assistant.

OUTPUT FORMAT (IMPORTANT):
Return ONLY a valid JSON object. No markdown, no code fences, no commentary.
Keys: action, order, prompt, confidence, itemQueried?, newQuantity?, modifiers?(group->choices), category?, item?.

ACTIONS:
{actions}

RULES:
- Default quantity = 1
- "yes", "that's correct", "confirm", "looks good", "go ahead" -> action = confirm
- If the user only chose a category or item, use choose_category or choose_item with category/item set.
- For "recommend": suggest 2-3 items from the menu.
- For info questions set itemQueried to one of: menu, total, order_summary, payment_methods, delivery_time, store_info.
- Keep the prompt friendly, short, and suitable for speech.

MENU:
{menu_lines}
"""


def parse_result(raw: str, *, order: Optional[Dict[str, Any]] = None) -> ResolverResult:
    """
    Parse the model's raw text into a ResolverResult.

    Raises:
        ResolverError: If the text is not a JSON object matching the result shape
    """
    text = (raw or "").strip()
    first_brace = text.find("{")
    if first_brace > 0:
        text = text[first_brace:]
    if not text:
        raise ResolverError("Empty resolver output")

    try:
        result = ResolverResult.model_validate_json(text)
    except ValidationError as e:
        raise ResolverError(f"Malformed resolver output: {e}") from e

    if result.order is None and order is not None:
        result.order = order
    return result


class ResponseCache:
    """
    Short-lived cache of generic informational answers keyed by normalized text.
    """

    def __init__(self, ttl_seconds: float = 60.0, max_entries: int = 256):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[float, ResolverResult]] = {}

    @staticmethod
    def key_for(text: str) -> str:
        return normalize(text)

    @staticmethod
    def is_cacheable_query(text: str) -> bool:
        key = normalize(text)
        return any(k in key for k in CACHEABLE_KEYWORDS)

    @staticmethod
    def is_cacheable_result(result: ResolverResult) -> bool:
        return result.action not in ORDER_ACTIONS and result.confidence > FALLBACK_CONFIDENCE

    def get(self, text: str, now: Optional[float] = None) -> Optional[ResolverResult]:
        key = self.key_for(text)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now is None:
            now = time.monotonic()
        expires_at, result = entry
        if now >= expires_at:
            self._entries.pop(key, None)
            return None
        return result.model_copy(deep=True)

    def put(self, text: str, result: ResolverResult, now: Optional[float] = None) -> bool:
        if not (self.is_cacheable_query(text) and self.is_cacheable_result(result)):
            return False
        if now is None:
            now = time.monotonic()
        self.purge(now)
        # Cached answers never carry order state.
        cached = result.model_copy(update={"order": None}, deep=True)
        key = self.key_for(text)
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            # Oldest insertion first; dicts keep insertion order.
            self._entries.pop(next(iter(self._entries)))
        self._entries[key] = (now + self.ttl_seconds, cached)
        return True

    def purge(self, now: Optional[float] = None) -> int:
        """Drop expired entries. Returns how many were removed."""
        if now is None:
            now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class IntentResolver:
    """
    OpenAI chat-completions resolver (JSON mode, temperature 0).
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[AsyncOpenAI] = None,
        cache: Optional[ResponseCache] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self.cache = cache if cache is not None else ResponseCache(self.config.resolver_cache_ttl_seconds)
        self.system_prompt = build_system_prompt()

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def _complete(self, text: str, state: Dict[str, Any], last_reply: str) -> str:
        messages: List[Dict[str, str]] = [{"role": "system", "content": self.system_prompt}]
        if last_reply:
            messages.append({"role": "assistant", "content": last_reply})
        messages.append({"role": "user", "content": f'User said: "{text}"'})
        messages.append({"role": "assistant", "content": f"Current order: {json.dumps(state)}"})

        response = await self.client.chat.completions.create(
            model=self.config.openai_model,
            messages=messages,
            temperature=0,
            max_tokens=350,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""

    async def resolve(
        self,
        text: str,
        state: Dict[str, Any],
        *,
        last_reply: str = "",
    ) -> ResolverResult:
        """
        Resolve `text` against `state`. Never raises for service failures.
        """
        order = {"items": list(state.get("items", []))}

        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("Resolver cache hit", action=cached.action)
            cached.order = order
            return cached

        start = time.perf_counter()
        try:
            raw = await asyncio.wait_for(
                self._complete(text, state, last_reply),
                timeout=self.config.resolver_timeout_seconds,
            )
            result = parse_result(raw, order=order)
        except asyncio.TimeoutError:
            logger.warning("Resolver timed out", timeout_s=self.config.resolver_timeout_seconds)
            return fallback_result(order)
        except ResolverError as e:
            logger.warning("Resolver returned malformed output", error=str(e))
            return fallback_result(order)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Resolver call failed", error=str(e), error_type=type(e).__name__)
            return fallback_result(order)

        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Resolver result",
            action=result.action,
            confidence=result.confidence,
            latency_ms=round(latency_ms, 1),
        )

        if self.cache.put(text, result):
            logger.debug("Resolver result cached", action=result.action)
        return result

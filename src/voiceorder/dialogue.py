"""
Menu-driven dialogue on top of the turn controller.

Routing order for one transcript:

1. Phase-first deterministic picks (category, item, modifier choices, extras,
   confirmation) using plain text matching, no model call.
2. Fast path for common questions (menu, total, thanks, direct item/category
   mentions).
3. The intent resolver.

Whatever produced it, the result is an action tag handled by one of the
`_on_<action>` methods below. Unrecognized actions get the generic fallback.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from src.voiceorder.config import get_config
from src.voiceorder.menu import (
    Menu,
    MenuItem,
    OrderLine,
    OrderPhase,
    OrderState,
    PendingModifiers,
    normalize,
    say_list,
)
from src.voiceorder.resolver import IntentResolver, ResolverResult

logger = structlog.get_logger(__name__)

APOLOGY_TEXT = "Sorry, I had a little trouble there. Could you say that one more time?"
GENERIC_FALLBACK_TEXT = "Sorry, I didn't quite get that. Could you say it one more time?"

_AFFIRMATIVE = ("yes", "yeah", "yep", "sure", "correct", "confirm", "go ahead", "place it", "place the order", "looks good")
_CONFIRM_WORDS = ("confirm", "place the order", "place my order", "that's all", "that's it", "checkout", "check out")
_CANCEL_WORDS = ("cancel",)
_MENU_WORDS = ("menu", "categories", "what do you have", "options", "available")
_THANKS_WORDS = ("thank", "thanks")


def _mentions(text: str, phrases: Iterable[str]) -> bool:
    t = normalize(text)
    return any(re.search(rf"\b{re.escape(p)}", t) for p in phrases)


@dataclass
class DialogueReply:
    """What to say next, and whether the call should end afterwards."""
    text: str
    action: str
    end_call: bool = False


Handler = Callable[[OrderState, ResolverResult, str], DialogueReply]


class OrderDialogue:
    """Turns a transcript plus the call's `OrderState` into a `DialogueReply`."""

    def __init__(
        self,
        resolver: Optional[IntentResolver] = None,
        menu: Optional[Menu] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.menu = menu or Menu()
        self._resolver = resolver
        self._handlers: Dict[str, Handler] = {
            "choose_category": self._on_choose_category,
            "choose_item": self._on_choose_item,
            "choose_modifiers": self._on_choose_modifiers,
            "add_extras": self._on_add_extras,
            "collecting": self._on_collecting,
            "info": self._on_info,
            "update_quantity": self._on_update_quantity,
            "reset": self._on_reset,
            "repeat_last": self._on_repeat_last,
            "help": self._on_help,
            "greeting": self._on_greeting,
            "acknowledge": self._on_acknowledge,
            "smalltalk": self._on_smalltalk,
            "clarify": self._on_clarify,
            "recommend": self._on_recommend,
            "unrecognized_item": self._on_unrecognized_item,
            "confirm": self._on_confirm,
            "finalize": self._on_finalize,
            "cancel": self._on_cancel,
            "unknown": self._on_unknown,
        }

    @property
    def resolver(self) -> IntentResolver:
        if self._resolver is None:
            self._resolver = IntentResolver(self.config)
        return self._resolver

    async def respond(self, order: OrderState, text: str) -> DialogueReply:
        result = self.deterministic(order, text)
        source = "deterministic"
        if result is None:
            result = self.handle_common_query(order, text)
            source = "fast_path"
        if result is None:
            result = await self.resolver.resolve(text, order.snapshot(), last_reply=order.last_reply)
            source = "resolver"

        logger.debug("Dialogue routed", source=source, action=result.action, phase=order.phase.value)
        return self.apply(order, result, text)

    def apply(self, order: OrderState, result: ResolverResult, text: str = "") -> DialogueReply:
        """Run the handler for `result.action` and record the reply on the order."""
        handler = self._handlers.get(result.action)
        if handler is None:
            logger.info("Unrecognized action, using fallback", action=result.action)
            handler = self._on_unknown

        reply = handler(order, result, text)
        order.last_action = reply.action
        order.last_reply = reply.text
        return reply

    # Routing

    def deterministic(self, order: OrderState, text: str) -> Optional[ResolverResult]:
        phase = order.phase

        if phase == OrderPhase.CHOOSE_CATEGORY:
            found = self.menu.find_item(text)
            if found is not None:
                return ResolverResult(
                    action="choose_item",
                    category=found[0].name,
                    item=found[1].name,
                    confidence=1.0,
                )
            category = self.menu.pick_category(text)
            if category:
                return ResolverResult(action="choose_category", category=category, confidence=1.0)

        elif phase == OrderPhase.CHOOSE_ITEM:
            if not order.selected_category:
                return ResolverResult(action="choose_category", confidence=1.0)
            item = self.menu.pick_item(order.selected_category, text)
            if item:
                return ResolverResult(
                    action="choose_item",
                    category=order.selected_category,
                    item=item,
                    confidence=1.0,
                )

        elif phase == OrderPhase.CHOOSE_MODIFIERS:
            pending = order.pending
            item = self.menu.get_item(pending.category, pending.item) if pending else None
            if pending and item and pending.current_group:
                group = pending.current_group
                picked = self.menu.pick_modifier_choices(item, group, text)
                if picked or self.handle_common_query(order, text) is None:
                    return ResolverResult(action="choose_modifiers", modifiers={group: picked}, confidence=1.0)

        elif phase == OrderPhase.COLLECTING:
            if order.lines and self.menu.find_item(text) is None:
                extras = self._pick_extras(order.lines[-1], text)
                if extras:
                    return ResolverResult(action="add_extras", modifiers=extras, confidence=1.0)

        elif phase == OrderPhase.CONFIRM:
            if _mentions(text, _CANCEL_WORDS):
                return ResolverResult(action="cancel", confidence=1.0)
            if _mentions(text, _AFFIRMATIVE):
                return ResolverResult(action="finalize", confidence=1.0)

        return None

    def handle_common_query(self, order: OrderState, text: str) -> Optional[ResolverResult]:
        if _mentions(text, _MENU_WORDS):
            return ResolverResult(action="info", item_queried="menu", confidence=1.0)

        lower = normalize(text)
        if "total" in lower or ("how much" in lower and " is " not in f" {lower} " and "cost" not in lower):
            return ResolverResult(action="info", item_queried="total", confidence=1.0)

        if _mentions(text, _THANKS_WORDS):
            return ResolverResult(action="acknowledge", reply="You're very welcome! Shall we continue?", confidence=1.0)

        if order.lines and _mentions(text, _CONFIRM_WORDS):
            return ResolverResult(action="confirm", confidence=1.0)

        found = self.menu.find_item(text)
        if found is not None:
            category, item = found
            return ResolverResult(action="choose_item", category=category.name, item=item.name, confidence=0.9)

        category_name = self.menu.pick_category(text) if len(lower.split()) <= 6 else None
        if category_name:
            return ResolverResult(action="choose_category", category=category_name, confidence=0.9)

        return None

    # Helpers

    def _line_item(self, line: OrderLine) -> Optional[MenuItem]:
        return self.menu.get_item(line.category, line.name)

    def _pick_extras(self, line: OrderLine, text: str) -> Dict[str, List[str]]:
        item = self._line_item(line)
        if item is None:
            return {}
        extras: Dict[str, List[str]] = {}
        for group in item.optional_groups:
            picked = self.menu.pick_modifier_choices(item, group.name, text)
            if picked:
                extras[group.name] = picked
        return extras

    def _total_sentence(self, order: OrderState) -> str:
        return f"Your total is {order.total_text} dollars."

    def _add_line(self, order: OrderState, category: str, item: MenuItem, modifiers=None, quantity: int = 1) -> None:
        order.add_line(OrderLine(
            category=category,
            name=item.name,
            base_price_cents=item.price_cents,
            quantity=max(quantity, 1),
            modifiers=dict(modifiers or {}),
        ))
        order.phase = OrderPhase.COLLECTING
        order.selected_category = category
        order.selected_item = item.name
        order.pending = None

    def _locate_item(self, category: Optional[str], name: Optional[str]):
        if category:
            item = self.menu.get_item(category, name)
            if item is not None:
                return self.menu.get_category(category).name, item
        if name:
            found = self.menu.find_item(name)
            if found is not None:
                return found[0].name, found[1]
        return None, None

    # Guided flow

    def _on_choose_category(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        category = result.category or order.selected_category
        if not category:
            order.phase = OrderPhase.CHOOSE_CATEGORY
            return DialogueReply(f"No rush, let's begin. {self.menu.prompt_for_category()}", "choose_category")

        cat = self.menu.get_category(category)
        if cat is None:
            order.phase = OrderPhase.CHOOSE_CATEGORY
            return DialogueReply(
                f"I couldn't find {category}. That happens! {self.menu.prompt_for_category()}",
                "choose_category",
            )

        order.phase = OrderPhase.CHOOSE_ITEM
        order.selected_category = cat.name
        return DialogueReply(self.menu.prompt_for_item(cat.name), "choose_category")

    def _on_choose_item(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        category, item = self._locate_item(result.category or order.selected_category, result.item)
        if item is None and result.category and order.selected_category:
            category, item = self._locate_item(order.selected_category, result.item)

        if item is None:
            known_category = self.menu.get_category(result.category or order.selected_category)
            if known_category is None:
                order.phase = OrderPhase.CHOOSE_CATEGORY
                return DialogueReply(
                    f"Let's pick a category first. {self.menu.prompt_for_category()}",
                    "choose_item",
                )
            order.phase = OrderPhase.CHOOSE_ITEM
            order.selected_category = known_category.name
            if not result.item:
                return DialogueReply(self.menu.prompt_for_item(known_category.name), "choose_item")
            return DialogueReply(
                f"I didn't find {result.item} in {known_category.name}. {self.menu.prompt_for_item(known_category.name)}",
                "choose_item",
            )

        required = item.required_groups
        if not required:
            self._add_line(order, category, item)
            extras = self.menu.describe_extras(item)
            text_out = f"Nice choice, {item.name} added. {self._total_sentence(order)}"
            if extras:
                text_out += f" {extras}"
            text_out += " Would you like to add something else or say confirm?"
            return DialogueReply(text_out, "choose_item")

        order.phase = OrderPhase.CHOOSE_MODIFIERS
        order.selected_category = category
        order.selected_item = item.name
        order.pending = PendingModifiers(
            category=category,
            item=item.name,
            groups_left=[g.name for g in required],
        )
        return DialogueReply(self.menu.prompt_for_modifiers(item, required[0].name), "choose_item")

    def _on_choose_modifiers(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        pending = order.pending
        item = self.menu.get_item(pending.category, pending.item) if pending else None
        if pending is None or item is None or not pending.current_group:
            order.phase = OrderPhase.CHOOSE_CATEGORY
            order.pending = None
            return DialogueReply(f"Let's start from the top. {self.menu.prompt_for_category()}", "choose_modifiers")

        group = pending.current_group
        names = (result.modifiers or {}).get(group) or self.menu.pick_modifier_choices(item, group, text)
        if not names:
            return DialogueReply(
                f"No worries, let's try that again. {self.menu.prompt_for_modifiers(item, group)}",
                "choose_modifiers",
            )

        selected = self.menu.resolve_choices(item, group, names)
        if not selected:
            return DialogueReply(
                f"Those options aren't available. {self.menu.prompt_for_modifiers(item, group)}",
                "choose_modifiers",
            )

        pending.chosen[group] = selected
        pending.groups_left = pending.groups_left[1:]
        if pending.current_group:
            return DialogueReply(self.menu.prompt_for_modifiers(item, pending.current_group), "choose_modifiers")

        chosen = pending.chosen
        self._add_line(order, pending.category, item, chosen)
        mods = "; ".join(f"{g}: {', '.join(c.name for c in cs)}" for g, cs in chosen.items())
        return DialogueReply(
            f"Perfect, {item.name} with {mods} is added. {self._total_sentence(order)} "
            "Would you like to add more or say confirm?",
            "choose_modifiers",
        )

    def _on_add_extras(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        line = order.lines[-1] if order.lines else None
        item = self._line_item(line) if line else None
        if line is None or item is None:
            return self._on_unknown(order, result, text)

        added: List[str] = []
        for group, names in (result.modifiers or {}).items():
            choices = self.menu.resolve_choices(item, group, names)
            if not choices:
                continue
            group_name = item.group(group).name
            if item.group(group).exclusive:
                line.modifiers[group_name] = choices
            else:
                existing = line.modifiers.setdefault(group_name, [])
                existing.extend(c for c in choices if c not in existing)
            added.extend(c.name for c in choices)

        if not added:
            return self._on_unknown(order, result, text)
        return DialogueReply(
            f"Got it, {say_list(added)} on your {line.name}. {self._total_sentence(order)} Anything else?",
            "add_extras",
        )

    def _on_collecting(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        messages: List[str] = []
        for entry in (result.order or {}).get("items", []) or []:
            if not isinstance(entry, dict):
                continue
            category, item = self._locate_item(entry.get("category"), entry.get("name"))
            if item is None:
                continue
            try:
                quantity = max(int(entry.get("quantity") or 1), 1)
            except (TypeError, ValueError):
                quantity = 1

            existing = order.find_line(item.name)
            if existing is not None:
                if existing.quantity != quantity:
                    existing.quantity = quantity
                    messages.append(f"Updated {existing.name} to {quantity}.")
                continue

            modifiers = {}
            for group, names in (entry.get("modifiers") or {}).items():
                if isinstance(names, str):
                    names = [names]
                choices = self.menu.resolve_choices(item, group, names or [])
                if choices:
                    modifiers[item.group(group).name] = choices
            self._add_line(order, category, item, modifiers, quantity)
            messages.append(f"Added {quantity} {item.name}.")

        order.phase = OrderPhase.COLLECTING
        prefix = " ".join(messages)
        return DialogueReply(
            f"{prefix + ' ' if prefix else ''}You now have {order.summary()}. {self._total_sentence(order)} "
            "Would you like to add anything else, make a change, or say confirm?",
            "collecting",
        )

    # Informational

    def _on_info(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        topic = normalize(result.item_queried or "")
        if topic in ("categories", "menu"):
            if not order.pending:
                order.phase = OrderPhase.CHOOSE_CATEGORY
            return DialogueReply(f"Happy to help. {self.menu.prompt_for_category()}", "info")
        if topic == "total":
            return DialogueReply(
                f"So far your total is {order.total_text} dollars. Would you like to add anything else?",
                "info",
            )
        if topic == "order_summary":
            return DialogueReply(
                f"Right now you have {order.summary()}. Want to add something or make a change?",
                "info",
            )
        if topic == "payment_methods":
            return DialogueReply(
                "We accept credit cards, debit cards, and cash on delivery. What would you like to do next?",
                "info",
            )
        if topic == "delivery_time":
            return DialogueReply(
                "Estimated delivery time is about 30 minutes. Shall we continue with your order?",
                "info",
            )
        if topic == "store_info":
            return DialogueReply(
                "We're at 123 Main Street and open 10 AM to 10 PM every day. What would you like to order?",
                "info",
            )
        return DialogueReply(result.reply or "I'm here. Could you share that once more?", "info")

    def _on_update_quantity(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        line = order.find_line(result.item_queried or result.item)
        if line is None:
            return DialogueReply(
                f"I couldn't find that in your order. Right now you have {order.summary()}.",
                "update_quantity",
            )
        if result.new_quantity is None:
            return DialogueReply(f"How many {line.name} would you like?", "update_quantity")

        if result.new_quantity <= 0:
            order.lines.remove(line)
            return DialogueReply(
                f"Okay, I removed the {line.name}. {self._total_sentence(order)} Would you like anything else?",
                "update_quantity",
            )

        line.quantity = result.new_quantity
        return DialogueReply(
            f"All set, {line.name} is now {line.quantity}. {self._total_sentence(order)} Would you like anything else?",
            "update_quantity",
        )

    def _on_reset(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        order.reset()
        return DialogueReply(f"No problem, let's start fresh. {self.menu.prompt_for_category()}", "reset")

    def _on_repeat_last(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            order.last_reply or "I didn't say anything just yet. What would you like to order?",
            "repeat_last",
        )

    def _on_help(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            "I can walk you through it, no rush. "
            f"First, pick a category like {say_list(self.menu.category_names)}. "
            "Then choose an item and any extras you want. "
            "You can always ask for your total or say confirm when you're ready.",
            "help",
        )

    def _on_greeting(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            f"Hi there, welcome to {self.config.company_name}! I'm here to help you place an order. "
            f"{self.menu.prompt_for_category()}",
            "greeting",
        )

    def _on_acknowledge(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            result.reply or "You're very welcome! Would you like to add anything else, or should I read your total?",
            "acknowledge",
        )

    def _on_smalltalk(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            result.reply or "I'm doing great, thanks for asking! Ready to choose a category?",
            "smalltalk",
        )

    def _on_clarify(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            result.reply or "Got it. Tell me a category like Burgers or Pizzas, then the item, and any extras you'd like.",
            "clarify",
        )

    def _on_recommend(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(
            result.reply
            or "Popular picks right now are the Chicken burger with Pickle and the Paneer Pizza with Mushrooms. "
            "Fancy one of these, or would you like to browse by category?",
            "recommend",
        )

    def _on_unrecognized_item(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        what = result.item_queried or result.item or "that item"
        return DialogueReply(
            f"I don't think we have {what} today. No worries, let's pick something we do have. "
            f"{self.menu.prompt_for_category()}",
            "unrecognized_item",
        )

    # Closing

    def _on_confirm(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        if not order.lines:
            order.phase = OrderPhase.CHOOSE_CATEGORY
            return DialogueReply(
                f"Your order is empty so far. {self.menu.prompt_for_category()}",
                "confirm",
            )
        order.phase = OrderPhase.CONFIRM
        return DialogueReply(
            f"Here's your order: {order.summary()}. Your total is {order.total_text} dollars. "
            "Would you like me to place it now? Say confirm or cancel.",
            "confirm",
        )

    def _on_finalize(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        if not order.lines:
            return self._on_confirm(order, result, text)
        order.finalized = True
        order.phase = OrderPhase.DONE
        logger.info("Order finalized", items=[line.to_dict() for line in order.lines], total=order.total_text)
        return DialogueReply(
            f"Done! Your order for {order.summary()}, total {order.total_text} dollars, is placed. "
            "Thanks so much for ordering with us, enjoy your meal!",
            "finalize",
            end_call=True,
        )

    def _on_cancel(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        order.reset()
        order.phase = OrderPhase.DONE
        return DialogueReply(
            result.reply or "Okay, I've cancelled that for you. Thanks for calling and have a lovely day!",
            "cancel",
            end_call=True,
        )

    def _on_unknown(self, order: OrderState, result: ResolverResult, text: str) -> DialogueReply:
        return DialogueReply(result.reply or GENERIC_FALLBACK_TEXT, "unknown")

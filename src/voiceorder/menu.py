"""
Menu catalog, pricing and per-call order state.

The catalog is a three-level tree: category -> item -> modifier groups. Prices
are kept as integer cents so running totals never drift.

Matching helpers are whole-word checks over normalized text (plural tolerant);
speech recognition output is short and the menu is small.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
import re
import unicodedata


@dataclass(frozen=True)
class ModifierChoice:
    name: str
    price_delta_cents: int = 0


@dataclass(frozen=True)
class ModifierGroup:
    name: str
    choices: Tuple[ModifierChoice, ...]
    required: bool = True
    exclusive: bool = False  # at most one choice


@dataclass(frozen=True)
class MenuItem:
    name: str
    price_cents: int
    modifiers: Tuple[ModifierGroup, ...] = ()

    @property
    def required_groups(self) -> Tuple[ModifierGroup, ...]:
        return tuple(g for g in self.modifiers if g.required)

    @property
    def optional_groups(self) -> Tuple[ModifierGroup, ...]:
        return tuple(g for g in self.modifiers if not g.required)

    def group(self, name: str) -> Optional[ModifierGroup]:
        n = normalize(name)
        for g in self.modifiers:
            if normalize(g.name) == n:
                return g
        return None


@dataclass(frozen=True)
class MenuCategory:
    name: str
    items: Tuple[MenuItem, ...]


def _d(dollars: str) -> int:
    return int((Decimal(dollars) * 100).quantize(Decimal("1")))


_PATTY = ModifierGroup(
    "Patty Size",
    (ModifierChoice("Single"), ModifierChoice("Double", _d("2"))),
    required=False,
    exclusive=True,
)
_BURGER_EXTRAS = ModifierGroup(
    "Extras",
    (ModifierChoice("Pickle", _d("1")), ModifierChoice("Bacon", _d("2"))),
    required=False,
)
_CRUST = ModifierGroup("Crust", (ModifierChoice("Thin"), ModifierChoice("Regular")), exclusive=True)
_TOPPINGS = ModifierGroup(
    "Toppings",
    (
        ModifierChoice("Pepperoni", _d("1.5")),
        ModifierChoice("Mushrooms", _d("1")),
        ModifierChoice("Olives", _d("1")),
    ),
)

DEFAULT_MENU: Tuple[MenuCategory, ...] = (
    MenuCategory(
        "Burgers",
        (
            MenuItem("Cheese burger", _d("5"), (_PATTY, _BURGER_EXTRAS)),
            MenuItem("Chicken burger", _d("5"), (_PATTY, _BURGER_EXTRAS)),
        ),
    ),
    MenuCategory(
        "Briyani",
        (
            MenuItem(
                "Veg",
                _d("2"),
                (ModifierGroup("Briyani", (ModifierChoice("Paneer", _d("2")), ModifierChoice("Mushroom", _d("2")))),),
            ),
            MenuItem(
                "Non Veg",
                _d("4"),
                (ModifierGroup("Briyani", (ModifierChoice("Chicken", _d("4")), ModifierChoice("Mutton", _d("5")))),),
            ),
        ),
    ),
    MenuCategory(
        "Drinks",
        (
            MenuItem("Coke", _d("1")),
            MenuItem("Fanta", _d("1")),
        ),
    ),
    MenuCategory(
        "Pizzas",
        (
            MenuItem("Paneer Pizza", _d("9"), (_CRUST, _TOPPINGS)),
            MenuItem("Chicken Pizza", _d("9"), (_CRUST, _TOPPINGS)),
        ),
    ),
)


def normalize(text: str) -> str:
    """
    Normalize text for matching: casefold + strip accents + collapse whitespace.
    """
    text = unicodedata.normalize("NFKD", text or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.replace("’", "'")
    text = " ".join(text.split())
    return text.casefold().strip(" .!?,")


def format_dollars(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


def say_list(items: Sequence[str]) -> str:
    """'a', 'a and b', 'a, b, and c'."""
    items = [i for i in items if i]
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return f"{items[0]} and {items[1]}"
    return f"{', '.join(items[:-1])}, and {items[-1]}"


def _contains_word(text: str, phrase: str) -> bool:
    return bool(phrase) and re.search(rf"\b{re.escape(phrase)}(?:e?s)?\b", text) is not None


def _best_match(utterance: str, names: Sequence[str]) -> Optional[str]:
    """
    Exact match, else the longest name contained in the utterance, else a name
    the utterance is a prefix-like fragment of ("pizza" -> "Pizzas").
    """
    u = normalize(utterance)
    if not u:
        return None
    normed = [(normalize(n), n) for n in names]
    for n, original in normed:
        if u == n:
            return original
    contained = [(n, original) for n, original in normed if _contains_word(u, n)]
    if not contained:
        # "pizza" for "Pizzas"
        contained = [(n, original) for n, original in normed if n.endswith("s") and _contains_word(u, n[:-1])]
    if contained:
        return max(contained, key=lambda pair: len(pair[0]))[1]
    if len(u) >= 3:
        for n, original in normed:
            if u in n:
                return original
    return None


class Menu:
    """Lookups over a catalog tree."""

    def __init__(self, categories: Sequence[MenuCategory] = DEFAULT_MENU):
        self.categories: Tuple[MenuCategory, ...] = tuple(categories)

    @property
    def category_names(self) -> List[str]:
        return [c.name for c in self.categories]

    def get_category(self, name: Optional[str]) -> Optional[MenuCategory]:
        picked = _best_match(name or "", self.category_names)
        for c in self.categories:
            if c.name == picked:
                return c
        return None

    def get_item(self, category: Optional[str], item_name: Optional[str]) -> Optional[MenuItem]:
        cat = self.get_category(category)
        if cat is None:
            return None
        name = _best_match(item_name or "", [i.name for i in cat.items])
        for item in cat.items:
            if item.name == name:
                return item
        return None

    def find_item(self, text: str) -> Optional[Tuple[MenuCategory, MenuItem]]:
        """Locate an item mentioned anywhere in `text` (longest name wins)."""
        t = normalize(text)
        if not t:
            return None
        best: Optional[Tuple[MenuCategory, MenuItem]] = None
        for cat in self.categories:
            for item in cat.items:
                iname = normalize(item.name)
                if _contains_word(t, iname) and (best is None or len(iname) > len(normalize(best[1].name))):
                    best = (cat, item)
        return best

    def pick_category(self, utterance: str) -> Optional[str]:
        return _best_match(utterance, self.category_names)

    def pick_item(self, category: str, utterance: str) -> Optional[str]:
        cat = self.get_category(category)
        if cat is None:
            return None
        return _best_match(utterance, [i.name for i in cat.items])

    @staticmethod
    def pick_modifier_choices(item: MenuItem, group_name: str, utterance: str) -> List[str]:
        group = item.group(group_name)
        u = normalize(utterance)
        if group is None or not u:
            return []
        hits = [c.name for c in group.choices if _contains_word(u, normalize(c.name))]
        if not hits:
            # "mushroom" for "Mushrooms", "olive" for "Olives"
            hits = [c.name for c in group.choices if _contains_word(u, normalize(c.name).rstrip("s"))]
        return list(dict.fromkeys(hits))

    def prompt_for_category(self) -> str:
        return f"Please choose a category to get started: {say_list(self.category_names)}."

    def prompt_for_item(self, category: str) -> str:
        cat = self.get_category(category)
        if cat is None or not cat.items:
            return f"Hmm, I couldn't find items under {category}. Let's try a different category."
        names = [i.name for i in cat.items]
        return f"Great choice, {cat.name}! Here are the options: {say_list(names)}. Which one sounds good to you?"

    @staticmethod
    def prompt_for_modifiers(item: MenuItem, group_name: str) -> str:
        group = item.group(group_name)
        if group is None or not group.choices:
            return f"No options for {group_name}."
        choice_text = say_list([
            f"{c.name} (adds {format_dollars(c.price_delta_cents)} dollars)" if c.price_delta_cents else c.name
            for c in group.choices
        ])
        return f"For your {item.name}, what would you like for {group.name}? Available choices are {choice_text}."

    @staticmethod
    def resolve_choices(item: MenuItem, group_name: str, names: Sequence[str]) -> List[ModifierChoice]:
        """Map spoken/model choice names onto the group's real choices, dropping unknowns."""
        group = item.group(group_name)
        if group is None:
            return []
        by_name = {normalize(c.name): c for c in group.choices}
        out: List[ModifierChoice] = []
        for name in names:
            n = normalize(name)
            choice = by_name.get(n) or by_name.get(n + "s") or by_name.get(n.rstrip("s"))
            if choice is not None and choice not in out:
                out.append(choice)
        return out[:1] if group.exclusive else out

    @staticmethod
    def describe_extras(item: MenuItem) -> str:
        choices: List[str] = []
        for group in item.optional_groups:
            choices.extend(c.name for c in group.choices if c.price_delta_cents)
        if not choices:
            return ""
        return f"You can also add extras like {say_list(choices)}."


class OrderPhase(str, Enum):
    CHOOSE_CATEGORY = "choose_category"
    CHOOSE_ITEM = "choose_item"
    CHOOSE_MODIFIERS = "choose_modifiers"
    COLLECTING = "collecting"
    CONFIRM = "confirm"
    DONE = "done"


@dataclass
class OrderLine:
    category: str
    name: str
    base_price_cents: int
    quantity: int = 1
    modifiers: Dict[str, List[ModifierChoice]] = field(default_factory=dict)

    @property
    def unit_price_cents(self) -> int:
        return self.base_price_cents + sum(
            c.price_delta_cents for choices in self.modifiers.values() for c in choices
        )

    @property
    def total_cents(self) -> int:
        return self.unit_price_cents * max(self.quantity, 1)

    def describe(self) -> str:
        prefix = f"{self.quantity} " if self.quantity > 1 else ""
        if not self.modifiers:
            return f"{prefix}{self.name}"
        mods = "; ".join(
            f"{group}: {', '.join(c.name for c in choices)}" for group, choices in self.modifiers.items()
        )
        return f"{prefix}{self.name} ({mods})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": format_dollars(self.unit_price_cents),
            "modifiers": {g: [c.name for c in cs] for g, cs in self.modifiers.items()},
        }


@dataclass
class PendingModifiers:
    """Required modifier groups still to be asked for `item`."""
    category: str
    item: str
    groups_left: List[str]
    chosen: Dict[str, List[ModifierChoice]] = field(default_factory=dict)

    @property
    def current_group(self) -> Optional[str]:
        return self.groups_left[0] if self.groups_left else None


@dataclass
class OrderState:
    """Accumulated order/conversation state for one call."""

    lines: List[OrderLine] = field(default_factory=list)
    phase: OrderPhase = OrderPhase.CHOOSE_CATEGORY
    selected_category: Optional[str] = None
    selected_item: Optional[str] = None
    pending: Optional[PendingModifiers] = None
    last_action: Optional[str] = None
    last_reply: str = ""
    finalized: bool = False

    @property
    def total_cents(self) -> int:
        return sum(line.total_cents for line in self.lines)

    @property
    def total_text(self) -> str:
        return format_dollars(self.total_cents)

    def summary(self) -> str:
        if not self.lines:
            return "no items yet"
        return say_list([line.describe() for line in self.lines])

    def add_line(self, line: OrderLine) -> int:
        for idx, existing in enumerate(self.lines):
            if (
                normalize(existing.name) == normalize(line.name)
                and not existing.modifiers
                and not line.modifiers
            ):
                existing.quantity += line.quantity
                return idx
        self.lines.append(line)
        return len(self.lines) - 1

    def find_line(self, name: Optional[str]) -> Optional[OrderLine]:
        n = normalize(name or "")
        if not n:
            return None
        for line in reversed(self.lines):
            if normalize(line.name) == n or normalize(line.name) in n:
                return line
        return None

    def reset(self) -> None:
        self.lines.clear()
        self.phase = OrderPhase.CHOOSE_CATEGORY
        self.selected_category = None
        self.selected_item = None
        self.pending = None
        self.last_action = None
        self.finalized = False

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view handed to the resolver."""
        return {
            "phase": self.phase.value,
            "selected_category": self.selected_category,
            "selected_item": self.selected_item,
            "items": [line.to_dict() for line in self.lines],
            "total": self.total_text,
        }

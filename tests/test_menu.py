"""
Tests for the menu catalog, matching helpers and order state.
"""

import pytest

from src.voiceorder.menu import (
    Menu,
    ModifierChoice,
    OrderLine,
    OrderPhase,
    OrderState,
    format_dollars,
    normalize,
    say_list,
)


@pytest.fixture
def menu():
    return Menu()


class TestTextHelpers:

    def test_normalize(self):
        assert normalize("  Crème   BRÛLÉE! ") == "creme brulee"
        assert normalize(None) == ""

    def test_format_dollars(self):
        assert format_dollars(500) == "5.00"
        assert format_dollars(1050) == "10.50"
        assert format_dollars(0) == "0.00"

    def test_say_list(self):
        assert say_list([]) == ""
        assert say_list(["a"]) == "a"
        assert say_list(["a", "b"]) == "a and b"
        assert say_list(["a", "b", "c"]) == "a, b, and c"


class TestMenuLookup:

    def test_category_names(self, menu):
        assert menu.category_names == ["Burgers", "Briyani", "Drinks", "Pizzas"]

    @pytest.mark.parametrize("utterance,expected", [
        ("burgers", "Burgers"),
        ("I'd like a pizza", "Pizzas"),
        ("drinks please", "Drinks"),
        ("BRIYANI", "Briyani"),
        ("something else", None),
    ])
    def test_pick_category(self, menu, utterance, expected):
        assert menu.pick_category(utterance) == expected

    def test_pick_item_prefers_longest_name(self, menu):
        assert menu.pick_item("Briyani", "veg") == "Veg"
        assert menu.pick_item("Briyani", "the non veg one") == "Non Veg"

    def test_pick_item_unknown_category(self, menu):
        assert menu.pick_item("Desserts", "cake") is None

    def test_find_item_anywhere(self, menu):
        found = menu.find_item("can I get two cheese burgers")
        assert found is not None
        category, item = found
        assert category.name == "Burgers"
        assert item.name == "Cheese burger"
        assert menu.find_item("hello there") is None

    def test_get_item(self, menu):
        item = menu.get_item("pizzas", "paneer pizza")
        assert item is not None
        assert item.price_cents == 900
        assert [g.name for g in item.required_groups] == ["Crust", "Toppings"]

    def test_modifier_choices_are_plural_tolerant(self, menu):
        pizza = menu.get_item("Pizzas", "Paneer Pizza")
        assert menu.pick_modifier_choices(pizza, "Toppings", "olive and mushroom") == ["Mushrooms", "Olives"]
        assert menu.pick_modifier_choices(pizza, "Crust", "thin please") == ["Thin"]
        assert menu.pick_modifier_choices(pizza, "Crust", "I think so") == []

    def test_resolve_choices_exclusive_group(self, menu):
        pizza = menu.get_item("Pizzas", "Paneer Pizza")
        picked = menu.resolve_choices(pizza, "Crust", ["thin", "regular"])
        assert picked == [ModifierChoice("Thin")]

    def test_resolve_choices_drops_unknown(self, menu):
        pizza = menu.get_item("Pizzas", "Paneer Pizza")
        picked = menu.resolve_choices(pizza, "Toppings", ["pepperoni", "pineapple", "olive"])
        assert [c.name for c in picked] == ["Pepperoni", "Olives"]


class TestPrompts:

    def test_prompt_for_category(self, menu):
        assert menu.prompt_for_category() == (
            "Please choose a category to get started: Burgers, Briyani, Drinks, and Pizzas."
        )

    def test_prompt_for_item(self, menu):
        prompt = menu.prompt_for_item("Drinks")
        assert "Coke and Fanta" in prompt

    def test_prompt_for_modifiers_lists_prices(self, menu):
        item = menu.get_item("Briyani", "Non Veg")
        prompt = menu.prompt_for_modifiers(item, "Briyani")
        assert "Chicken (adds 4.00 dollars)" in prompt
        assert "Mutton (adds 5.00 dollars)" in prompt

    def test_describe_extras(self, menu):
        burger = menu.get_item("Burgers", "Cheese burger")
        assert menu.describe_extras(burger) == "You can also add extras like Double, Pickle, and Bacon."
        assert menu.describe_extras(menu.get_item("Drinks", "Coke")) == ""


class TestOrderState:

    def test_line_pricing(self):
        line = OrderLine(
            "Pizzas",
            "Paneer Pizza",
            900,
            quantity=2,
            modifiers={"Crust": [ModifierChoice("Thin")], "Toppings": [ModifierChoice("Pepperoni", 150)]},
        )
        assert line.unit_price_cents == 1050
        assert line.total_cents == 2100
        assert line.describe() == "2 Paneer Pizza (Crust: Thin; Toppings: Pepperoni)"

    def test_add_line_merges_plain_items(self):
        order = OrderState()
        order.add_line(OrderLine("Drinks", "Coke", 100))
        order.add_line(OrderLine("Drinks", "Coke", 100))

        assert len(order.lines) == 1
        assert order.lines[0].quantity == 2
        assert order.total_text == "2.00"

    def test_add_line_keeps_modified_items_apart(self):
        order = OrderState()
        order.add_line(OrderLine("Burgers", "Cheese burger", 500))
        order.add_line(OrderLine("Burgers", "Cheese burger", 500, modifiers={"Extras": [ModifierChoice("Bacon", 200)]}))

        assert len(order.lines) == 2
        assert order.total_cents == 1200

    def test_summary_and_find_line(self):
        order = OrderState()
        assert order.summary() == "no items yet"
        order.add_line(OrderLine("Drinks", "Fanta", 100))
        assert order.summary() == "Fanta"
        assert order.find_line("fanta").name == "Fanta"
        assert order.find_line("") is None

    def test_reset(self):
        order = OrderState()
        order.add_line(OrderLine("Drinks", "Coke", 100))
        order.phase = OrderPhase.CONFIRM
        order.finalized = True

        order.reset()

        assert order.lines == []
        assert order.phase == OrderPhase.CHOOSE_CATEGORY
        assert not order.finalized

    def test_snapshot(self):
        order = OrderState()
        order.add_line(OrderLine("Drinks", "Coke", 100))
        snap = order.snapshot()

        assert snap["phase"] == "choose_category"
        assert snap["total"] == "1.00"
        assert snap["items"][0] == {
            "category": "Drinks",
            "name": "Coke",
            "quantity": 1,
            "unit_price": "1.00",
            "modifiers": {},
        }

import asyncio

import pytest

from dispatch import ActionRegistry, split_action


def test_split_action():
    assert split_action("wallet") == ("wallet", None)
    assert split_action("confirm_withdraw:So111") == ("confirm_withdraw", "So111")


def test_dispatch_passes_argument():
    registry = ActionRegistry()
    seen = []

    @registry.register("confirm_withdraw")
    async def handler(update, context, arg):
        seen.append((update, context, arg))

    assert asyncio.run(registry.dispatch("confirm_withdraw:mint", "u", "c"))
    assert seen == [("u", "c", "mint")]


def test_unknown_action_is_ignored():
    registry = ActionRegistry()
    assert asyncio.run(registry.dispatch("nope", None, None)) is False


def test_duplicate_registration_fails():
    registry = ActionRegistry()

    async def handler(update, context, arg):
        pass

    registry.register("wallet", handler)
    with pytest.raises(ValueError):
        registry.register("wallet", handler)


def test_action_ids_cannot_contain_separator():
    with pytest.raises(ValueError):
        ActionRegistry().register("a:b")


def test_validate_reports_missing_actions():
    registry = ActionRegistry()

    async def handler(update, context, arg):
        pass

    registry.register("wallet", handler)
    registry.validate(["wallet"])
    with pytest.raises(ValueError, match="settings"):
        registry.validate(["wallet", "settings"])


def test_bot_registers_every_keyboard_action():
    import bot

    bot.ACTIONS.validate(bot.KEYBOARD_ACTIONS)

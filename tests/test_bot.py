import pytest

from bot import KEYBOARD_ACTIONS, chain_of, confirm_keyboard, main_keyboard, to_base_units


def labels(markup):
    return [button.text for row in markup.inline_keyboard for button in row]


@pytest.mark.parametrize("markup", [main_keyboard(), confirm_keyboard("confirm_withdraw", "SOL")])
def test_keyboard_labels_are_trimmed(markup):
    for text in labels(markup):
        assert text == text.strip()
        assert text


def test_keyboards_only_emit_known_actions():
    for markup in (main_keyboard(), confirm_keyboard("confirm_withdraw", "XRP:1000000")):
        for row in markup.inline_keyboard:
            for button in row:
                assert button.callback_data.split(":", 1)[0] in KEYBOARD_ACTIONS


@pytest.mark.parametrize("amount,decimals,expected", [
    ("1.5", 9, 1_500_000_000),
    ("0.000001", 6, 1),
    ("25", 6, 25_000_000),
    ("0", 9, None),
    ("-1", 9, None),
    ("abc", 9, None),
    ("NaN", 9, None),
])
def test_to_base_units(amount, decimals, expected):
    assert to_base_units(amount, decimals) == expected


def test_chain_of():
    assert chain_of("xrp") == "xrp"
    assert chain_of("SOL") == "solana"
    assert chain_of("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v") == "solana"

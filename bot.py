import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import Application, CommandHandler, ContextTypes, CallbackQueryHandler
from xrpl.core.addresscodec import is_valid_classic_address

from config import Settings, setup_logging
from dispatch import ActionRegistry
from errors import (
    InsufficientReserve,
    InvalidAsset,
    InvalidCredential,
    InvalidDestination,
    LedgerUnavailable,
    TradeFailed,
    TransferCancelled,
    TransferInterrupted,
)
from ledger import FeeParams, SolanaLedger, parse_asset
from sessions import SessionManager, TradeSession
from trade_api import TradeAPIClient
from transfer import TransferConfig, transfer_tokens, withdraw_native
from wallet_store import WalletStore
from xrp_ledger import XrpLedger

EXPLORER_TX_URLS = {
    "solana": "https://solscan.io/tx/{}",
    "xrp": "https://livenet.xrpl.org/transactions/{}",
}

GENERIC_FAILURE = "❌ Transaction failed. Please try again."
WITHDRAW_FAILURE = (
    "❌ Withdrawal failed. It may still land on-chain, so check your wallet "
    "before starting another withdrawal."
)

ACTIONS = ActionRegistry()

# Every action a keyboard in this module can emit
KEYBOARD_ACTIONS = (
    "wallet", "settings", "help",
    "confirm_buy", "confirm_sell",
    "confirm_withdraw", "cancel_withdraw",
    "cancel",
)


@dataclass
class BotServices:
    settings: Settings
    ledger: SolanaLedger
    xrp_ledger: XrpLedger
    store: WalletStore
    sessions: SessionManager
    trade_api: TradeAPIClient
    transfer_config: TransferConfig
    withdrawals: Dict[str, asyncio.Event] = field(default_factory=dict)


def get_services(context: ContextTypes.DEFAULT_TYPE) -> BotServices:
    return context.application.bot_data["services"]


def ledger_for(services: BotServices, chain: str):
    return services.xrp_ledger if chain == "xrp" else services.ledger


def chain_of(asset: str) -> str:
    return "xrp" if asset.upper() == "XRP" else "solana"


def chat_id_of(update: Update) -> int:
    if update.callback_query:
        return update.callback_query.message.chat.id
    return update.effective_chat.id


async def reply(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str,
                reply_markup: Optional[InlineKeyboardMarkup] = None):
    """Edit the pressed message for callbacks, send a new one for commands."""
    if update.callback_query:
        await update.callback_query.edit_message_text(text=text, reply_markup=reply_markup)
    else:
        await context.bot.send_message(chat_id=chat_id_of(update), text=text, reply_markup=reply_markup)


def session_for(services: BotServices, user_id: str) -> TradeSession:
    def factory() -> TradeSession:
        record = services.store.check_wallet(user_id)
        if not record.exists:
            record = services.store.register_user(user_id)
        session = TradeSession(user_id=user_id, public_key=record.public_key, private_key=record.private_key)
        session.apply_settings(services.store.load_settings(user_id))
        return session

    return services.sessions.get_or_create(user_id, factory)


def main_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("💼 Wallet", callback_data="wallet")],
        [InlineKeyboardButton("⚙️ Settings", callback_data="settings")],
        [InlineKeyboardButton("❓ Help", callback_data="help")],
    ])


def confirm_keyboard(action: str, arg: Optional[str] = None) -> InlineKeyboardMarkup:
    data = f"{action}:{arg}" if arg else action
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("✅ Confirm", callback_data=data),
        InlineKeyboardButton("❌ Cancel", callback_data="cancel"),
    ]])


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Start command handler"""
    services = get_services(context)
    user = update.effective_user
    record = services.store.register_user(str(user.id), user.username)
    logging.info(f"User ID: {user.id} started the bot")

    await context.bot.send_message(
        chat_id=chat_id_of(update),
        text=(
            "Welcome to the Solana Trading Bot!\n\n"
            f"Your Solana deposit address:\n{record.public_key}\n\n"
            f"Your XRP deposit address:\n{record.xrp_public_key}"
        ),
        reply_markup=main_keyboard()
    )


async def _chain_section(services: BotServices, chain: str, address: str, withdraw_address: Optional[str]) -> str:
    ledger = ledger_for(services, chain)
    symbol = ledger.native_symbol
    section = f"{symbol} Wallet\n"
    section += f"Address: {address}\n"
    section += f"Withdraw Address: {withdraw_address or 'not set'}\n"
    try:
        owner = ledger.parse_destination(address)
        native = await ledger.native_balance(owner)
        tokens = await ledger.token_balances(owner)
    except LedgerUnavailable as e:
        logging.error(f"Error fetching {chain} balances for {address}: {e}")
        return section + f"Could not reach the {chain.capitalize()} network.\n"

    section += f"{symbol} Balance: {native:.4f} {symbol}\n"
    if tokens:
        section += "Token Balances:\n"
        for token in tokens:
            section += f"{token['mint']}: {token['amount']:.{token['decimals']}f}\n"
    else:
        section += "Token Balances: No tokens found\n"
    return section


async def wallet_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Show addresses, native balances and token balances on both chains"""
    services = get_services(context)
    user = update.effective_user
    record = services.store.register_user(str(user.id), user.username)

    message = "💼 Wallet Details\n\n"
    message += await _chain_section(services, "solana", record.public_key, record.withdraw_address)
    message += "\n"
    message += await _chain_section(services, "xrp", record.xrp_public_key, record.xrp_withdraw_address)

    await reply(update, context, message)


def _parse_trade_args(args) -> Optional[tuple]:
    if not args or len(args) < 2:
        return None
    try:
        mint = str(parse_asset(args[0]))
        amount = float(args[1])
    except (InvalidAsset, ValueError):
        return None
    if amount <= 0:
        return None
    return mint, amount


async def buy_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/buy <token_mint> <sol_amount>"""
    parsed = _parse_trade_args(context.args)
    if not parsed:
        await reply(update, context, "Format: /buy <token_mint> <sol_amount>")
        return

    services = get_services(context)
    session = session_for(services, str(update.effective_user.id))
    session.mint, session.amount = parsed

    message = "🟢 Buy Token\n\n"
    message += f"Token: {session.mint}\n"
    message += f"Amount: {session.amount} SOL\n"
    message += f"Slippage: {session.slippage_bps / 100}%\n"
    message += f"Priority Fee: {session.priority_fee} µlamports/CU\n"
    message += f"Jito: {'on' if session.use_jito else 'off'}"
    await reply(update, context, message, confirm_keyboard("confirm_buy"))


async def sell_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/sell <token_mint> <token_amount>"""
    parsed = _parse_trade_args(context.args)
    if not parsed:
        await reply(update, context, "Format: /sell <token_mint> <token_amount>")
        return

    services = get_services(context)
    session = session_for(services, str(update.effective_user.id))
    session.mint, session.amount = parsed

    message = "🔴 Sell Token\n\n"
    message += f"Token: {session.mint}\n"
    message += f"Amount: {session.amount}\n"
    message += f"Slippage: {session.slippage_bps / 100}%"
    await reply(update, context, message, confirm_keyboard("confirm_sell"))


async def _execute_trade(update: Update, context: ContextTypes.DEFAULT_TYPE, side: str):
    services = get_services(context)
    user_id = str(update.effective_user.id)
    session = services.sessions.get(user_id)
    if session is None or not session.mint:
        await reply(update, context, "This order has expired. Please start again.")
        return

    try:
        if side == "buy":
            result = await services.trade_api.buy(session)
        else:
            result = await services.trade_api.sell(session)
    except TradeFailed as e:
        logging.error(f"{side.capitalize()} execution error for {user_id}: {e}")
        await reply(update, context, GENERIC_FAILURE)
        return

    services.store.store_trade(user_id, {
        "side": side,
        "mint": session.mint,
        "amount": session.amount,
        "txid": result.receipt_id,
        "result_amount": result.result_amount,
    })
    label = "Tokens Purchased" if side == "buy" else "SOL Received"
    title = "Purchase Successful!" if side == "buy" else "Sale Successful!"
    session.mint, session.amount = None, None
    await reply(
        update, context,
        f"✅ {title}\n\n{label}: {result.result_amount}\nTransaction ID: https://solscan.io/tx/{result.receipt_id}"
    )


@ACTIONS.register("confirm_buy")
async def confirm_buy_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    await _execute_trade(update, context, "buy")


@ACTIONS.register("confirm_sell")
async def confirm_sell_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    await _execute_trade(update, context, "sell")


async def setwithdraw_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/setwithdraw <address> accepts a Solana or an XRP address"""
    if not context.args:
        await reply(update, context, "Format: /setwithdraw <solana_or_xrp_address>")
        return

    services = get_services(context)
    user = update.effective_user
    services.store.register_user(str(user.id), user.username)
    address = context.args[0].strip()
    chain = "xrp" if is_valid_classic_address(address) else "solana"
    try:
        record = services.store.set_withdraw_address(str(user.id), address, chain)
    except InvalidDestination:
        await reply(update, context, "That is not a valid Solana or XRP wallet address.")
        return
    _, _, withdraw_address = record.for_chain(chain)
    await reply(update, context, f"{ledger_for(services, chain).native_symbol} withdraw address set to {withdraw_address}")


def to_base_units(amount: str, decimals: int) -> Optional[int]:
    """'1.5' with 9 decimals -> 1500000000; None for anything that is not a positive number."""
    try:
        value = Decimal(amount)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return int(value * (10 ** decimals))


async def withdraw_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/withdraw <token_mint|SOL|XRP> [amount]

    Without an amount the whole balance is swept; an amount is only accepted
    for SOL and XRP.
    """
    services = get_services(context)
    user = update.effective_user
    user_id = str(user.id)
    record = services.store.register_user(user_id, user.username)

    args = context.args or []
    asset = args[0].strip() if args else "SOL"
    chain = chain_of(asset)
    ledger = ledger_for(services, chain)
    _, _, withdraw_address = record.for_chain(chain)
    if not withdraw_address:
        await reply(update, context, f"Set a {ledger.native_symbol} withdraw address first with /setwithdraw <address>")
        return

    if asset.upper() == ledger.native_symbol:
        asset = ledger.native_symbol
    else:
        try:
            asset = str(ledger.parse_asset(asset))
        except InvalidAsset:
            await reply(update, context, "Format: /withdraw <token_mint|SOL|XRP> [amount]")
            return

    arg = asset
    amount_text = "The full balance will be sent."
    if len(args) >= 2:
        if asset != ledger.native_symbol:
            await reply(update, context, "An amount can only be given for SOL or XRP. Token withdrawals send the full balance.")
            return
        units = to_base_units(args[1], ledger.native_decimals)
        if units is None:
            await reply(update, context, f"Invalid amount: {args[1]}")
            return
        arg = f"{asset}:{units}"
        amount_text = f"Amount: {args[1]} {asset}"

    if user_id in services.withdrawals:
        await reply(update, context, "A withdrawal is already in progress.")
        return

    session = session_for(services, user_id)
    session.pending_withdraw = arg
    message = "🏦 Withdraw\n\n"
    message += f"Asset: {asset}\n"
    message += f"Destination: {withdraw_address}\n\n"
    message += f"{amount_text} Confirm?"
    await reply(update, context, message, confirm_keyboard("confirm_withdraw", arg))


async def run_withdrawal(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: str, arg: str, cancel: asyncio.Event):
    """Sweep `asset`, or send a fixed native amount when arg is 'ASSET:units'."""
    services = get_services(context)
    asset, _, units = arg.partition(":")
    chain = chain_of(asset)
    ledger = ledger_for(services, chain)
    _, secret, withdraw_address = services.store.check_wallet(user_id).for_chain(chain)
    try:
        if units:
            receipt = await withdraw_native(
                ledger, secret, withdraw_address, int(units), services.transfer_config, cancel=cancel,
            )
        else:
            receipt = await transfer_tokens(
                ledger,
                secret,
                withdraw_address,
                asset,
                services.transfer_config,
                cancel=cancel,
            )
    except TransferCancelled:
        text = "Withdrawal cancelled. A transaction may already have been sent, check your wallet."
    except InsufficientReserve:
        text = "Balance is too low to cover fees and the minimum account balance."
    except (InvalidCredential, InvalidDestination, InvalidAsset) as e:
        logging.error(f"Withdrawal for {user_id} refused: {e}")
        text = "Withdrawal refused: wallet or destination is invalid."
    except TransferInterrupted as e:
        logging.error(f"Withdrawal for {user_id} interrupted: {e}")
        text = f"Could not reach the {chain.capitalize()} network. Check your wallet before trying again."
    except Exception as e:
        logging.error(f"Withdrawal for {user_id} failed: {e}")
        logging.exception(e)
        text = WITHDRAW_FAILURE
    else:
        if receipt.noop:
            text = "No tokens to transfer."
        else:
            link = EXPLORER_TX_URLS[chain].format(receipt.signature)
            text = f"✅ Withdrawal confirmed\n\nTransaction ID: {link}"
            services.store.store_trade(user_id, {
                "side": "withdraw",
                "chain": chain,
                "mint": asset,
                "amount": receipt.amount,
                "txid": receipt.signature,
            })
    finally:
        services.withdrawals.pop(user_id, None)

    await context.bot.send_message(chat_id=chat_id, text=text)


@ACTIONS.register("confirm_withdraw")
async def confirm_withdraw_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    services = get_services(context)
    user_id = str(update.effective_user.id)
    session = services.sessions.get(user_id)
    # A confirmation is only honoured once, for the withdrawal it was shown for
    if session is None or not arg or session.pending_withdraw != arg:
        await reply(update, context, "This withdrawal has expired. Use /withdraw again.")
        return
    if user_id in services.withdrawals:
        await reply(update, context, "A withdrawal is already in progress.")
        return

    session.pending_withdraw = None
    cancel = asyncio.Event()
    services.withdrawals[user_id] = cancel
    await reply(
        update, context,
        "⏳ Withdrawal submitted. Waiting for confirmation...",
        InlineKeyboardMarkup([[InlineKeyboardButton("🛑 Stop waiting", callback_data="cancel_withdraw")]])
    )
    context.application.create_task(run_withdrawal(context, chat_id_of(update), user_id, arg, cancel))


@ACTIONS.register("cancel_withdraw")
async def cancel_withdraw_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    services = get_services(context)
    cancel = services.withdrawals.get(str(update.effective_user.id))
    if cancel is None:
        await reply(update, context, "No withdrawal in progress.")
        return
    cancel.set()
    await reply(update, context, "Stopping...")


@ACTIONS.register("cancel")
async def cancel_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    services = get_services(context)
    session = services.sessions.get(str(update.effective_user.id))
    if session is not None:
        session.mint, session.amount, session.pending_withdraw = None, None, None
    await reply(update, context, "Cancelled.")


SETTING_PARSERS = {
    "slippage": ("slippage_bps", lambda v: max(1, min(int(v), 5000))),
    "priority_fee": ("priority_fee", lambda v: max(0, int(v))),
    "jito": ("use_jito", lambda v: v.lower() in ("on", "true", "1", "yes")),
}


async def settings_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/settings [slippage <bps> | priority_fee <µlamports> | jito on|off]"""
    services = get_services(context)
    user_id = str(update.effective_user.id)
    session = session_for(services, user_id)

    args = context.args or []
    if len(args) >= 2:
        entry = SETTING_PARSERS.get(args[0].lower())
        if entry is None:
            await reply(update, context, f"Unknown setting: {args[0]}")
            return
        key, parse = entry
        try:
            value = parse(args[1])
        except ValueError:
            await reply(update, context, f"Invalid value for {args[0]}: {args[1]}")
            return
        session.apply_settings(services.store.save_settings(user_id, {key: value}))
        logging.info(f"User {user_id} set {key} to {value}")

    message = "⚙️ Trade Settings\n\n"
    message += f"Slippage: {session.slippage_bps / 100}%\n"
    message += f"Priority Fee: {session.priority_fee} µlamports/CU\n"
    message += f"Jito: {'on' if session.use_jito else 'off'}\n\n"
    message += "/settings slippage <bps>\n/settings priority_fee <µlamports>\n/settings jito on|off"
    await reply(update, context, message)


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Help command handler"""
    message = "❓ Solana Trading Bot Help\n\n"
    message += "/start - Create your wallet\n"
    message += "/wallet - Show balances\n"
    message += "/buy <token_mint> <sol_amount> - Buy a token\n"
    message += "/sell <token_mint> <amount> - Sell a token\n"
    message += "/setwithdraw <address> - Set your Solana or XRP withdraw address\n"
    message += "/withdraw <token_mint|SOL|XRP> [amount] - Send a balance to your withdraw address\n"
    message += "/settings - Show or change trade settings\n"
    message += "/help - Show this message\n"
    await reply(update, context, message)


@ACTIONS.register("wallet")
async def wallet_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    await wallet_command(update, context)


@ACTIONS.register("settings")
async def settings_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    context.args = []
    await settings_command(update, context)


@ACTIONS.register("help")
async def help_action(update: Update, context: ContextTypes.DEFAULT_TYPE, arg: Optional[str]):
    await help_command(update, context)


async def button_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle button callbacks"""
    query = update.callback_query
    await query.answer()
    logging.info(f"User ID from button callback: {query.from_user.id}, action: {query.data}")
    try:
        await ACTIONS.dispatch(query.data, update, context)
    except Exception as e:
        logging.error(f"Error handling callback {query.data}: {e}")
        logging.exception(e)
        await reply(update, context, GENERIC_FAILURE)


def build_services(settings: Settings) -> BotServices:
    fees = FeeParams(
        priority_fee_micro_lamports=settings.priority_fee_micro_lamports,
        jito_tip_lamports=settings.jito_tip_lamports,
        compute_unit_limit=settings.compute_unit_limit,
    )
    return BotServices(
        settings=settings,
        ledger=SolanaLedger(settings.rpc_url, jito_url=settings.jito_url, tip_account=settings.jito_tip_account),
        xrp_ledger=XrpLedger(settings.xrp_rpc_url),
        store=WalletStore(f"{settings.data_dir}/wallets.json", settings.wallet_encryption_key),
        sessions=SessionManager(ttl=settings.session_ttl),
        trade_api=TradeAPIClient(settings.trade_api_url),
        transfer_config=TransferConfig(
            max_attempts=settings.max_attempts,
            confirmation_attempts=settings.confirmation_attempts,
            base_interval=settings.confirmation_min_timeout,
            settle_delay=settings.settle_delay,
            fees=fees,
        ),
    )


def build_application(services: BotServices) -> Application:
    ACTIONS.validate(KEYBOARD_ACTIONS)

    application = Application.builder().token(services.settings.telegram_bot_token).build()
    application.bot_data["services"] = services

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("wallet", wallet_command))
    application.add_handler(CommandHandler("buy", buy_command))
    application.add_handler(CommandHandler("sell", sell_command))
    application.add_handler(CommandHandler("setwithdraw", setwithdraw_command))
    application.add_handler(CommandHandler("withdraw", withdraw_command))
    application.add_handler(CommandHandler("settings", settings_command))
    application.add_handler(CommandHandler("help", help_command))

    # Add callback query handler
    application.add_handler(CallbackQueryHandler(button_callback))
    return application


async def main():
    """Main function"""
    settings = Settings.from_env()
    setup_logging(settings.log_dir)

    services = build_services(settings)
    application = build_application(services)

    # Start the bot
    await application.initialize()
    await application.start()
    await application.updater.start_polling()

    logging.info("Bot started")

    try:
        # Keep the bot running
        while True:
            await asyncio.sleep(60)
            services.sessions.evict_expired()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logging.info("Bot stopping...")
    finally:
        await application.updater.stop()
        await application.stop()
        await application.shutdown()
        await services.trade_api.close()
        await services.ledger.close()
        await services.xrp_ledger.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        logging.critical(f"Fatal error: {e}")
        logging.exception(e)

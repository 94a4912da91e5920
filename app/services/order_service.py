"""Per-sender order lifecycle: commands, analysis turns and invoice generation."""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from app.logging_config import get_logger
from app.services.email_service import EmailDeliveryResult, EmailSender
from app.services.extraction_service import ExtractionResult, InvoiceAnalyzer, format_eur
from app.services.invoice_service import RenderedInvoice, render_invoice
from app.services.result import EMAIL_ERROR, RENDER_ERROR, TIMEOUT, Result
from app.services.session_store import InvoiceFields, PendingOrder, SessionStore, normalize_sender_key
from app.services.state_machine import (
    TERMINAL_STATUSES,
    ExtractionStatus,
    OrderState,
    cancel_order,
    next_state,
)

logger = get_logger("order_service")

Reply = Callable[[str], Awaitable[None]]

CANCEL_COMMANDS = {"annuler", "cancel"}
HELP_COMMANDS = {"aide", "help", "?"}

MSG_ORDER_CANCELLED = "❌ Commande annulée."
MSG_NOTHING_PENDING = "ℹ️ Aucune commande en cours."
MSG_HELP = (
    "🤖 *Bot Facture*\n\n"
    "Envoyez un message vocal avec:\n"
    '"Facture pour [client], [service], [montant] euros"\n\n'
    "Commandes:\n"
    "• *annuler* pour abandonner la facture en cours\n"
    "• *aide* pour revoir ce message"
)
MSG_GENERATING = "📄 Génération de la facture..."
MSG_INVOICE_FAILED = "❌ La facture n'a pas pu être générée. Recommencez votre demande."

RENDER_TIMEOUT_SECONDS = 30.0


@dataclass
class TurnOutcome:
    """What one utterance did to the sender's order."""

    message: Optional[str]
    state: OrderState
    status: Optional[ExtractionStatus] = None
    command: Optional[str] = None
    confirmed_fields: Optional[InvoiceFields] = None


def match_command(utterance: str) -> Optional[str]:
    """Return "cancel" or "help" when the whole utterance is a command."""
    text = (utterance or "").strip().lower()
    if text in HELP_COMMANDS:
        return "help"
    text = text.rstrip(" .!?…").strip()
    if text in CANCEL_COMMANDS:
        return "cancel"
    if text in HELP_COMMANDS:
        return "help"
    return None


def build_invoice_created_message(rendered: RenderedInvoice, fields: InvoiceFields, emailed: bool) -> str:
    message = (
        "🎉 *Facture créée!*\n\n"
        f"📄 N°: *{rendered.invoice_number}*\n"
        f"👤 {fields.client_name}\n"
        f"📝 {fields.description}\n"
        f"💰 *{format_eur(rendered.total_with_tax)}*"
    )
    if emailed:
        message += "\n📧 Envoyée!"
    return message


class OrderController:
    """Sole writer of a bot's session store."""

    def __init__(
        self,
        store: SessionStore,
        *,
        output_dir: Path,
        email_sender: Optional[EmailSender] = None,
        renderer=render_invoice,
        bot_id: Optional[str] = None,
    ):
        self.store = store
        self.output_dir = Path(output_dir)
        self.email_sender = email_sender
        self.renderer = renderer
        self.bot_id = bot_id

    def _context(self, sender_key: str, **extra) -> dict:
        return {"context": {"bot_id": self.bot_id, "sender": sender_key, **extra}}

    def current_state(self, sender_key: str) -> OrderState:
        order = self.store.get(sender_key)
        return order.state if order else OrderState.NO_ORDER

    def run_command(self, sender_key: str, command: str) -> TurnOutcome:
        if command == "help":
            return TurnOutcome(MSG_HELP, self.current_state(sender_key), command=command)

        existing = self.store.get(sender_key)
        if existing is None:
            return TurnOutcome(MSG_NOTHING_PENDING, OrderState.NO_ORDER, command=command)
        self.store.delete(sender_key)
        state = cancel_order(existing.state)
        logger.info("Order cancelled by command", extra=self._context(sender_key, previous=existing.state.value))
        return TurnOutcome(MSG_ORDER_CANCELLED, state, command=command)

    def apply_result(self, sender_key: str, existing: Optional[PendingOrder], result: ExtractionResult) -> OrderState:
        current = existing.state if existing else OrderState.NO_ORDER
        target = next_state(current, result.status)

        if result.status in TERMINAL_STATUSES:
            self.store.delete(sender_key)
        elif result.status in (ExtractionStatus.INCOMPLETE, ExtractionStatus.PENDING_CONFIRMATION):
            self.store.set(PendingOrder(sender_key=sender_key, state=target, fields=result.data))

        if target != current:
            logger.info(
                "Order state changed",
                extra=self._context(sender_key, from_state=current.value, to_state=target.value, status=result.status.value),
            )
        return target

    async def handle_utterance(self, sender_key: str, utterance: str, analyzer: InvoiceAnalyzer) -> TurnOutcome:
        sender_key = normalize_sender_key(sender_key)
        command = match_command(utterance)
        if command:
            return self.run_command(sender_key, command)

        existing = self.store.get(sender_key)
        result = await analyzer.analyze(utterance, existing)
        state = self.apply_result(sender_key, existing, result)

        return TurnOutcome(
            message=result.user_message,
            state=state,
            status=result.status,
            confirmed_fields=result.data if result.status == ExtractionStatus.CONFIRMED else None,
        )

    async def generate_invoice(
        self,
        sender_key: str,
        fields: InvoiceFields,
        *,
        settings: dict,
        templates: dict,
        reply: Reply,
    ) -> Result[RenderedInvoice]:
        """Render, email and report. The order is already gone; failures are not retried."""
        await reply(MSG_GENERATING)
        started = time.monotonic()

        try:
            rendered = await asyncio.wait_for(
                asyncio.to_thread(self.renderer, fields, self.output_dir, settings),
                timeout=RENDER_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Invoice rendering timed out", extra=self._context(sender_key))
            await reply(MSG_INVOICE_FAILED)
            return Result.from_exception(exc, TIMEOUT)
        except Exception as exc:
            logger.error(
                "Invoice rendering failed",
                extra=self._context(sender_key, error=str(exc), error_type=type(exc).__name__),
            )
            await reply(MSG_INVOICE_FAILED)
            return Result.from_exception(exc, RENDER_ERROR)

        delivery = EmailDeliveryResult()
        if self.email_sender is not None:
            try:
                delivery = await self.email_sender.send_invoice_emails(
                    rendered=rendered, fields=fields, settings=settings, templates=templates
                )
            except Exception as exc:
                logger.error(
                    "Invoice email failed",
                    extra=self._context(
                        sender_key,
                        invoice_number=rendered.invoice_number,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    ),
                )
                await reply(MSG_INVOICE_FAILED)
                return Result.from_exception(exc, EMAIL_ERROR)

        logger.info(
            "Invoice generated",
            extra=self._context(
                sender_key,
                invoice_number=rendered.invoice_number,
                invoice_sent=delivery.invoice_sent,
                confirmation_sent=delivery.confirmation_sent,
                elapsed_ms=round((time.monotonic() - started) * 1000, 2),
            ),
        )
        await reply(build_invoice_created_message(rendered, fields, delivery.invoice_sent))
        return Result.success(rendered)

"""Invoice email delivery through Resend."""

import asyncio
import base64
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import resend

from app.logging_config import get_logger
from app.services.extraction_service import format_eur
from app.services.invoice_service import RenderedInvoice
from app.services.result import EMAIL_DISABLED, EMAIL_ERROR, NO_RECIPIENTS, TIMEOUT, Result
from app.services.session_store import InvoiceFields

logger = get_logger("email_service")

DEFAULT_TEMPLATES = {
    "invoice": {
        "subject": "Facture {invoiceNumber} - {clientName}",
        "html": (
            "<h1>Facture {invoiceNumber}</h1>\n"
            "<p>Client: {clientName}</p>\n"
            "<p>Montant: {amount}</p>\n"
            "<p>La facture est en pièce jointe.</p>"
        ),
    },
    "confirmation": {
        "subject": "✅ Facture {invoiceNumber} créée",
        "html": (
            "<h1>Confirmation</h1>\n"
            "<p>La facture {invoiceNumber} a été créée et envoyée.</p>\n"
            "<p>Client: {clientName}</p>\n"
            "<p>Montant: {amount}</p>"
        ),
    },
}


class EmailDeliveryError(Exception):
    """The invoice email could not be handed to the provider."""


@dataclass
class EmailDeliveryResult:
    invoice_sent: bool = False
    confirmation_sent: bool = False
    invoice_email_id: Optional[str] = None


def render_template(template: str, *, invoice_number: str, fields: InvoiceFields, amount: str) -> str:
    """Fill {invoiceNumber}, {clientName}, {amount} and {description}; other braces stay as they are."""
    return (
        (template or "")
        .replace("{invoiceNumber}", invoice_number)
        .replace("{clientName}", fields.client_name or "")
        .replace("{amount}", amount)
        .replace("{description}", fields.description or "")
    )


def _recipients(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).strip() for item in value if str(item).strip()]


def _attachment(path: Path, invoice_number: str) -> dict:
    content = Path(path).read_bytes()
    return {
        "filename": f"{invoice_number}.pdf",
        "content": base64.b64encode(content).decode("utf-8"),
    }


class EmailSender:
    def __init__(self, api_key: Optional[str], default_from: str = "", timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.default_from = default_from
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _sender(self, settings: dict, suffix: str = "") -> str:
        address = settings.get("email_from") or self.default_from or settings.get("company_email") or ""
        name = (settings.get("company_name") or "").strip()
        if name and address and "<" not in address:
            return f"{name}{suffix} <{address}>"
        return address

    def _send_sync(self, payload: dict) -> Optional[str]:
        resend.api_key = self.api_key
        response = resend.Emails.send(payload)
        if isinstance(response, dict):
            return response.get("id")
        return getattr(response, "id", None)

    async def _send(self, payload: dict) -> Optional[str]:
        return await asyncio.wait_for(asyncio.to_thread(self._send_sync, payload), timeout=self.timeout_seconds)

    def _build_payload(
        self,
        kind: str,
        *,
        rendered: RenderedInvoice,
        fields: InvoiceFields,
        settings: dict,
        templates: dict,
        to: Iterable[str],
        sender_suffix: str = "",
    ) -> dict:
        template = {**DEFAULT_TEMPLATES[kind], **((templates or {}).get(kind) or {})}
        amount = format_eur(rendered.total_with_tax)
        fill = dict(invoice_number=rendered.invoice_number, fields=fields, amount=amount)
        return {
            "from": self._sender(settings, sender_suffix),
            "to": list(to),
            "subject": render_template(template.get("subject", ""), **fill),
            "html": render_template(template.get("html", ""), **fill),
            "attachments": [_attachment(rendered.document_path, rendered.invoice_number)],
        }

    async def send_invoice_email(
        self, *, rendered: RenderedInvoice, fields: InvoiceFields, settings: dict, templates: dict
    ) -> Result[Optional[str]]:
        """Send the invoice to the bot's recipients. Provider failures raise EmailDeliveryError."""
        if not self.configured:
            return Result.failure("email delivery is not configured", EMAIL_DISABLED)
        recipients = _recipients(settings.get("email_recipients"))
        if not recipients:
            return Result.failure("no invoice recipients", NO_RECIPIENTS)

        payload = self._build_payload(
            "invoice", rendered=rendered, fields=fields, settings=settings, templates=templates, to=recipients
        )
        try:
            email_id = await self._send(payload)
        except asyncio.TimeoutError as exc:
            raise EmailDeliveryError(f"invoice email timed out after {self.timeout_seconds}s") from exc
        except Exception as exc:
            raise EmailDeliveryError(str(exc)) from exc

        logger.info(
            "Invoice email sent",
            extra={"context": {"invoice_number": rendered.invoice_number, "recipients": len(recipients)}},
        )
        return Result.success(email_id)

    async def send_confirmation_email(
        self, *, rendered: RenderedInvoice, fields: InvoiceFields, settings: dict, templates: dict
    ) -> Result[Optional[str]]:
        """Best-effort notice to the confirmation recipients; never raises."""
        if not self.configured:
            return Result.failure("email delivery is not configured", EMAIL_DISABLED)
        recipients = _recipients(settings.get("confirmation_recipients"))
        if not recipients:
            return Result.failure("no confirmation recipients", NO_RECIPIENTS)

        try:
            payload = self._build_payload(
                "confirmation",
                rendered=rendered,
                fields=fields,
                settings=settings,
                templates=templates,
                to=recipients,
                sender_suffix=" Bot",
            )
            email_id = await self._send(payload)
        except asyncio.TimeoutError:
            logger.warning(
                "Confirmation email timed out",
                extra={"context": {"invoice_number": rendered.invoice_number}},
            )
            return Result.failure("confirmation email timed out", TIMEOUT)
        except Exception as exc:
            logger.warning(
                "Confirmation email failed",
                extra={"context": {"invoice_number": rendered.invoice_number, "error": str(exc)}},
            )
            return Result.from_exception(exc, EMAIL_ERROR)
        return Result.success(email_id)

    async def send_invoice_emails(
        self, *, rendered: RenderedInvoice, fields: InvoiceFields, settings: dict, templates: dict
    ) -> EmailDeliveryResult:
        invoice = await self.send_invoice_email(
            rendered=rendered, fields=fields, settings=settings, templates=templates
        )
        if not invoice.ok:
            logger.info(
                "Invoice email skipped",
                extra={"context": {"invoice_number": rendered.invoice_number, "reason": invoice.error_code}},
            )
        confirmation = await self.send_confirmation_email(
            rendered=rendered, fields=fields, settings=settings, templates=templates
        )
        return EmailDeliveryResult(
            invoice_sent=invoice.ok,
            confirmation_sent=confirmation.ok,
            invoice_email_id=invoice.value,
        )

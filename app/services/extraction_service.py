"""Invoice extraction from one utterance.

The language model only reads the text. Merging, completeness, confirmation
and every user-facing message are decided here.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider
from app.services.session_store import DEFAULT_TAX_RATE_PCT, InvoiceFields, PendingOrder
from app.services.state_machine import ExtractionStatus, OrderState

logger = get_logger("extraction_service")

COHERENCE_THRESHOLD = 40
NARROW_NBSP = "\u202f"
NBSP = "\u00a0"
EXTRACTION_TEMPERATURE = 0.1
EXTRACTION_MAX_TOKENS = 800

CONFIRM_KEYWORDS = ("oui", "ok", "yes", "confirmer", "valider", "c'est bon", "parfait")
CANCEL_KEYWORDS = ("non", "no", "annuler", "cancel", "stop")

FIELD_LABELS = {
    "client_name": "👤 Nom du client",
    "description": "📝 Description du service",
    "amount": "💰 Montant en euros",
}

MSG_INVALID = (
    "⚠️ *Message mal compris*\n\n"
    "Je n'ai pas bien compris votre message. Pouvez-vous répéter plus clairement ?\n\n"
    '💡 Exemple: "Facture pour Jean Dupont, création site web, 1500 euros"'
)
MSG_NOT_INVOICE = (
    "💬 J'ai bien reçu votre message.\n\n"
    "Pour créer une facture, dites-moi:\n"
    "• Le nom du client\n"
    "• La description du service\n"
    "• Le montant en euros"
)
MSG_CANCELLED = "❌ Commande annulée. Vous pouvez recommencer."
MSG_ANALYSIS_ERROR = "❌ Erreur d'analyse. Réessayez."

DEFAULT_PROFILE_PROMPT = """Tu es un assistant qui aide à créer des factures.
Tu analyses les messages vocaux pour extraire:
- Nom du client
- Description du service
- Montant en euros

Sois poli et demande les informations manquantes."""

EXTRACTION_PROMPT = """Analyse ce message pour créer une facture.

MESSAGE À ANALYSER:
"{utterance}"
{existing_context}
ANALYSE EN 3 ÉTAPES:

1. QUALITÉ: le texte est-il cohérent ou est-ce du charabia (mots aléatoires, sons mal transcrits) ? Score 0-100.
2. INTENTION: la personne demande-t-elle une facture/devis, ou est-ce un message sans rapport ?
3. EXTRACTION: nom du client, description du service, montant HT en euros, email du client.

RÉPONDS UNIQUEMENT EN JSON STRICT:
{{
  "coherenceScore": <0-100>,
  "isGibberish": <true|false>,
  "isInvoiceIntent": <true|false>,
  "data": {{
    "clientName": <string ou null>,
    "description": <string ou null>,
    "amount": <number ou 0>,
    "clientEmail": <string ou null>
  }},
  "aiQuestion": <question à poser si des informations manquent, ou null>
}}"""


class ExtractionParseError(Exception):
    """Model output did not match the extraction schema."""


class ExtractedData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_name: Optional[str] = Field(default=None, alias="clientName")
    description: Optional[str] = None
    amount: Optional[float] = Field(default=None, allow_inf_nan=False)
    client_email: Optional[str] = Field(default=None, alias="clientEmail")


class ExtractionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    coherence_score: float = Field(alias="coherenceScore", ge=0, le=100)
    is_gibberish: bool = Field(default=False, alias="isGibberish")
    is_invoice_intent: bool = Field(alias="isInvoiceIntent")
    data: ExtractedData = Field(default_factory=ExtractedData)
    ai_question: Optional[str] = Field(default=None, alias="aiQuestion")


@dataclass
class ExtractionResult:
    status: ExtractionStatus
    data: Optional[InvoiceFields] = None
    user_message: Optional[str] = None
    missing_fields: list[str] = field(default_factory=list)


def _normalize(text: str) -> str:
    return (text or "").strip().lower()


def detect_confirmation(text: str) -> Optional[str]:
    """Return "confirm", "cancel" or None. Confirm keywords win over cancel keywords."""
    lowered = _normalize(text)
    if not lowered:
        return None
    if any(keyword in lowered for keyword in CONFIRM_KEYWORDS):
        return "confirm"
    if any(keyword in lowered for keyword in CANCEL_KEYWORDS):
        return "cancel"
    return None


def format_eur(value: float) -> str:
    """fr-FR currency formatting: 1 500,00 €"""
    formatted = f"{value:,.2f}"
    integer, decimals = formatted.split(".")
    return f"{integer.replace(',', NARROW_NBSP)},{decimals}{NBSP}€"


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def merge_fields(
    existing: Optional[InvoiceFields],
    extracted: ExtractedData,
    *,
    default_tax_rate_pct: float = DEFAULT_TAX_RATE_PCT,
) -> InvoiceFields:
    """Monotonic merge: a new value replaces the stored one only when present."""
    base = existing.copy() if existing else InvoiceFields(tax_rate_pct=default_tax_rate_pct)

    client_name = _clean_text(extracted.client_name)
    if client_name:
        base.client_name = client_name

    description = _clean_text(extracted.description)
    if description:
        base.description = description

    if extracted.amount is not None and extracted.amount > 0:
        base.amount = float(extracted.amount)

    client_email = _clean_text(extracted.client_email)
    if client_email:
        base.client_email = client_email

    if not base.quantity:
        base.quantity = 1
    if base.tax_rate_pct is None:
        base.tax_rate_pct = default_tax_rate_pct
    return base


def build_missing_message(missing: Iterable[str], question: Optional[str] = None) -> str:
    lines = "\n".join(FIELD_LABELS[name] for name in missing)
    message = (
        "📝 *Informations reçues, mais incomplètes.*\n\n"
        f"Il me manque:\n{lines}\n\n"
        "💡 Envoyez un autre message avec les informations manquantes."
    )
    if question:
        message += f"\n\n❓ {question}"
    return message


def build_recap_message(fields: InvoiceFields) -> str:
    lines = [
        "✅ *Récapitulatif de la facture:*",
        "",
        f"👤 Client: *{fields.client_name}*",
        f"📝 Service: {fields.description}",
        f"💰 Total TTC: *{format_eur(fields.total_with_tax())}*",
    ]
    if fields.client_email:
        lines.append(f"📧 Email: {fields.client_email}")
    lines += [
        "",
        '✅ Répondez *"oui"* pour générer la facture',
        '❌ Répondez *"non"* pour annuler',
    ]
    return "\n".join(lines)


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_extraction_payload(content: str) -> ExtractionPayload:
    """Validate the model reply against the schema; anything else is a failure."""
    text = _strip_code_fence(content or "")
    if not text:
        raise ExtractionParseError("empty model output")
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ExtractionParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ExtractionParseError("model output is not a JSON object")
    try:
        return ExtractionPayload.model_validate(raw)
    except ValidationError as exc:
        raise ExtractionParseError(f"schema mismatch: {exc.error_count()} errors") from exc


def _format_knowledge(entries: Iterable) -> str:
    lines = []
    for entry in entries or []:
        if isinstance(entry, dict):
            text = entry.get("content") or entry.get("text") or entry.get("answer")
            title = entry.get("title") or entry.get("question")
            if title and text:
                lines.append(f"- {title}: {text}")
            elif text or title:
                lines.append(f"- {text or title}")
        elif entry:
            lines.append(f"- {entry}")
    return "\n".join(lines)


def build_extraction_messages(
    utterance: str,
    existing: Optional[InvoiceFields],
    *,
    profile_prompt: Optional[str] = None,
    knowledge_entries: Iterable = (),
) -> list[dict]:
    system = profile_prompt or DEFAULT_PROFILE_PROMPT
    knowledge = _format_knowledge(knowledge_entries)
    if knowledge:
        system += f"\n\nInformations utiles:\n{knowledge}"

    existing_context = ""
    if existing:
        existing_context = (
            "\nInformations déjà collectées:\n"
            f"- Client: {existing.client_name or 'Non spécifié'}\n"
            f"- Description: {existing.description or 'Non spécifié'}\n"
            f"- Montant: {existing.amount or 'Non spécifié'}\n"
        )

    prompt = EXTRACTION_PROMPT.format(utterance=utterance.strip(), existing_context=existing_context)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]


class InvoiceAnalyzer:
    """Turns one utterance plus the sender's pending order into an ExtractionResult."""

    def __init__(
        self,
        provider: Optional[LLMProvider],
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 15.0,
        profile_prompt: Optional[str] = None,
        knowledge_entries: Iterable = (),
        default_tax_rate_pct: float = DEFAULT_TAX_RATE_PCT,
    ):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.profile_prompt = profile_prompt
        self.knowledge_entries = list(knowledge_entries or [])
        self.default_tax_rate_pct = default_tax_rate_pct

    async def analyze(self, utterance: str, existing: Optional[PendingOrder]) -> ExtractionResult:
        if existing is not None and existing.state == OrderState.PENDING_CONFIRMATION:
            decision = detect_confirmation(utterance)
            if decision == "confirm":
                return ExtractionResult(ExtractionStatus.CONFIRMED, data=existing.fields.copy())
            if decision == "cancel":
                return ExtractionResult(ExtractionStatus.CANCELLED, user_message=MSG_CANCELLED)

        existing_fields = existing.fields if existing else None

        try:
            payload = await self._extract(utterance, existing_fields)
        except Exception as exc:
            logger.warning(
                "Extraction failed",
                extra={"context": {"error": str(exc), "error_type": type(exc).__name__}},
            )
            return ExtractionResult(ExtractionStatus.ERROR, user_message=MSG_ANALYSIS_ERROR)

        if payload.is_gibberish or payload.coherence_score < COHERENCE_THRESHOLD:
            return ExtractionResult(ExtractionStatus.INVALID, user_message=MSG_INVALID)

        if not payload.is_invoice_intent and existing is None:
            return ExtractionResult(ExtractionStatus.NOT_INVOICE, user_message=MSG_NOT_INVOICE)

        merged = merge_fields(existing_fields, payload.data, default_tax_rate_pct=self.default_tax_rate_pct)
        missing = merged.missing_fields()
        if missing:
            return ExtractionResult(
                ExtractionStatus.INCOMPLETE,
                data=merged,
                user_message=build_missing_message(missing, _clean_text(payload.ai_question)),
                missing_fields=missing,
            )

        return ExtractionResult(
            ExtractionStatus.PENDING_CONFIRMATION,
            data=merged,
            user_message=build_recap_message(merged),
        )

    async def _extract(self, utterance: str, existing: Optional[InvoiceFields]) -> ExtractionPayload:
        if self.provider is None:
            raise RuntimeError("LLM provider is not configured")

        messages = build_extraction_messages(
            utterance,
            existing,
            profile_prompt=self.profile_prompt,
            knowledge_entries=self.knowledge_entries,
        )
        started = time.monotonic()
        response = await asyncio.wait_for(
            asyncio.to_thread(
                self.provider.generate,
                messages,
                model=self.model,
                temperature=EXTRACTION_TEMPERATURE,
                max_tokens=EXTRACTION_MAX_TOKENS,
                timeout_seconds=self.timeout_seconds,
                json_mode=True,
            ),
            timeout=self.timeout_seconds,
        )
        logger.info(
            "Timing",
            extra={
                "context": {
                    "stage": "extraction_llm_ms",
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                    "model_name": response.model,
                }
            },
        )
        return parse_extraction_payload(response.content)

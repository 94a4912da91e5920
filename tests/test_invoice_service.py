import re
from datetime import datetime, timezone

from app.services.invoice_service import _pdf_amount, new_invoice_number, render_invoice
from app.services.session_store import InvoiceFields


class TestInvoiceNumber:
    def test_format(self):
        number = new_invoice_number(now=datetime(2026, 3, 9, tzinfo=timezone.utc))
        assert re.fullmatch(r"FAC-20260309-[0-9A-F]{6}", number)

    def test_custom_prefix(self):
        assert new_invoice_number("DEV-").startswith("DEV-")

    def test_unique(self):
        numbers = {new_invoice_number() for _ in range(50)}
        assert len(numbers) == 50


class TestRender:
    def test_pdf_written(self, tmp_path):
        fields = InvoiceFields(client_name="Jean Dupont", description="Création site web", amount=1500)

        rendered = render_invoice(fields, tmp_path / "invoices", {"company_name": "Martin & Fils"})

        assert rendered.document_path.exists()
        assert rendered.document_path.read_bytes().startswith(b"%PDF")
        assert rendered.document_path.name == f"{rendered.invoice_number}.pdf"
        assert rendered.subtotal == 1500.0
        assert rendered.tax_amount == 300.0
        assert rendered.total_with_tax == 1800.0

    def test_quantity_and_tax_rate(self, tmp_path):
        fields = InvoiceFields(client_name="A", description="B", amount=100, quantity=3, tax_rate_pct=5.5)
        rendered = render_invoice(fields, tmp_path)
        assert rendered.subtotal == 300.0
        assert rendered.tax_amount == 16.5
        assert rendered.total_with_tax == 316.5

    def test_identical_orders_get_distinct_files(self, tmp_path):
        fields = InvoiceFields(client_name="A", description="B", amount=10)
        first = render_invoice(fields, tmp_path)
        second = render_invoice(fields, tmp_path)
        assert first.invoice_number != second.invoice_number
        assert first.document_path.exists() and second.document_path.exists()

    def test_pdf_amount_uses_plain_spaces(self):
        assert _pdf_amount(1800) == "1 800,00 €"

"""Prompt templates for invoice and receipt extraction."""

INVOICE_PROMPT = """You are an invoice and receipt parser.
Extract the document header and every line item from the provided file.

Return a SINGLE JSON object:
{
  "vendor_name": "Acme Supplies Ltd",
  "invoice_number": "INV-1042",
  "po_number": null,
  "order_number": null,
  "document_date": "2025-01-15",
  "currency": "GBP",
  "subtotal": "100.00",
  "tax": "20.00",
  "fee": null,
  "shipping": null,
  "total": "120.00",
  "line_items": [
    {"description": "Printer paper A4", "quantity": "10", "unit_price": "10.00", "total": "100.00"}
  ],
  "field_confidence": {"vendor_name": 0.95, "total": 0.9, "document_date": 0.9},
  "category": "Office Supplies",
  "subcategory": null
}

Rules:
1. Amounts as strings with 2 decimal places, no thousands separators
2. Dates in YYYY-MM-DD format
3. field_confidence values between 0 and 1
4. Use null for anything that is not visible on the document
5. Include ALL line items in document order
"""


def get_invoice_prompt(filename: str | None = None) -> str:
    if not filename:
        return INVOICE_PROMPT
    return f"{INVOICE_PROMPT}\nSource file name: {filename}\n"

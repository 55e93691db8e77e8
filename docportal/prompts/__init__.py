"""Prompt templates."""

from docportal.prompts.invoice import INVOICE_PROMPT, get_invoice_prompt

__all__ = ["INVOICE_PROMPT", "get_invoice_prompt"]

"""Invoicing and payment handling."""

from .invoices import Invoice, InvoiceManager, generate_invoice_number
from .stripe_webhook import handle_stripe_webhook

__all__ = ["Invoice", "InvoiceManager", "generate_invoice_number", "handle_stripe_webhook"]

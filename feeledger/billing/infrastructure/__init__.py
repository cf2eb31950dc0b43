"""Billing persistence adapters."""

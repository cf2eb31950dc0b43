"""Billing application layer."""

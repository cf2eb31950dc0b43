"""Student fee billing: balances, bulk issuance, payments, reminders and reconciliation."""

"""HTTP API for tokenization, payments, utilities and webhooks."""

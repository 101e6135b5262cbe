"""Persistence layer for sessions, cards, payments and webhook events."""

"""Sync core: configuration, models, reconciliation, subscriptions, notifications."""

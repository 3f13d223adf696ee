"""Relay services: token store, conversion, delivery and orchestration."""

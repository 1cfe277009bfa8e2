"""Inbound Graph change-notification webhook (API Gateway → Lambda)."""

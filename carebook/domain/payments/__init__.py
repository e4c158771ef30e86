"""Payments domain - Stripe lookups, payment reconciliation and webhooks"""

"""Payouts domain - Therapist payout calculation and settlement"""

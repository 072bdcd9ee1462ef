"""Pricing, order lifecycle and referral-credit core of the storefront."""

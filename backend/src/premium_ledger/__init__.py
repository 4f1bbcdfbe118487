"""Premium entitlements, micro-purchase balances and referral commissions
reconciled from Stripe webhooks."""

__version__ = "1.0.0"

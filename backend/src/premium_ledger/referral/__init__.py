"""Referral commissions.

Three programs:
- standard: 5% of every payment
- offer_5: $5 on the first subscription, then 15% for six months after signup
- offer_10: $10 on the first subscription, nothing after
"""

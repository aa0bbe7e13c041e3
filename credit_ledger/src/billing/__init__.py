"""
Billing Module

Credit ledger and Dodo Payments reconciliation:
- credits: balance, grants, deductions, expiration
- ledger: storage
- subscriptions: user-initiated subscription operations
- external.dodo: provider client and webhooks
- endpoints: FastAPI routers
"""

"""
Subscription plans, subscriptions, limit checks and the Stripe webhook.

Stripe owns the subscription lifecycle; this module mirrors its state.
"""

"""
Subscription entitlements service.
"""

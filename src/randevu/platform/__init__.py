"""
Randevu Platform Services.

Subscription lifecycle, plan changes and proration for appointment-based
businesses on the Randevu platform.
"""

__version__ = "0.1.0"

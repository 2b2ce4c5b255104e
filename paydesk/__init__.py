"""
paydesk
=======
Payment-to-invoice fulfillment for Razorpay storefronts: order creation,
payment verification, invoice rendering, archival and customer email.
"""

__version__ = "1.0.0"

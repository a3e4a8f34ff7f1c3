"""
Order Notification & Tracking Pipeline

Detects new orders and status changes for the restaurant admin console and
storefront, raises an alert once per genuinely-new notification, and keeps
alerting alive through a background agent.

Version: 1.0.0
"""

__version__ = "1.0.0"

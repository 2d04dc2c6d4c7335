"""
Admission engine.

Application and payment reconciliation core for capacity-limited training
programs: slot allocation, the application state machine, and payment
finalization across the provider's verify and webhook channels.
"""

__version__ = "1.0.0"

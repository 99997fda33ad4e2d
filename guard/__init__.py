"""
Campaign Access Guard

Access-security core for the campaign CRM: login throttling, idle-session
expiry, consent lifecycle and audit-log anomaly alerts.

Import components from their modules (guard.service, guard.throttle, ...).
"""

__version__ = "1.0.0"

from . import admin_payouts, prometheus

__all__ = ["admin_payouts", "prometheus"]

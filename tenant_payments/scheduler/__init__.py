"""Scheduled reconciliation job."""

from .jobs import JOB_ID, ReconciliationScheduler, create_cron_trigger

__all__ = ['JOB_ID', 'ReconciliationScheduler', 'create_cron_trigger']

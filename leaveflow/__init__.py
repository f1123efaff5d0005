"""Leaveflow: leave requests, approval workflows and the leave balance ledger."""

"""
Django HTTP trigger for reconciliation runs.

Endpoints:
- POST /api/reconcile/  run the reconciliation, returns the JSON report
- GET  /api/status/     reconciliation backlog statistics
"""

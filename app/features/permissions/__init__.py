"""
Permission management feature module.

Implements module-scoped Role-Based Access Control (RBAC): structured
permission keys, a single-query evaluator, the role lifecycle and the audit
ledger.
"""

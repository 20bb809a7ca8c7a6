"""Deal fulfillment module -- cache models, CRM sync, reconciliation, approval.

Provides SQLAlchemy models for users, deals, products and deal line items,
Pydantic schemas, DealStore for async CRUD, and the three flows built on
them: SyncOrchestrator (CRM -> cache), ReconciliationEngine (installer fact
amounts) and ApprovalPropagator (warehouse approval -> CRM). AccountService
registers CRM users locally and checks their passwords.
"""

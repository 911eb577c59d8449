# wallet/__init__.py
"""
Wallet job subsystem.

Provides:
- Configuration & endpoints for jmwalletd
- Core domain enums, models and wire schemas
- Cancellation scope and cancellable timer primitives
- Services for snapshots, job launches and reconciliation of fire-and-forget jobs
- Application-level WalletJobAPI for the control panel / CLI
"""

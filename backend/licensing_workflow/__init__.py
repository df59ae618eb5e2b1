"""
Licensing Workflow - orchestration core

Moves a licensing application through the reviewer chain
(JE -> AE -> EE -> CE -> Clerk -> EE stage 2 -> CE stage 2), assigning a
reviewer at every stage and gating each hand-off on an OTP-authenticated
HSM signature.
"""

__version__ = "1.0.0"

from .orchestrator import SignatureOrchestrator, SignatureOutcome, derive_transaction_id

__all__ = ['SignatureOrchestrator', 'SignatureOutcome', 'derive_transaction_id']

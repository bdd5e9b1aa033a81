from proofsmith.store.base import (
    ProofJob,
    ProofStore,
    ProofStoreError,
    StoredVariant,
    VariantRecord,
)
from proofsmith.store.sqlite import SQLiteProofStore

__all__ = [
    "ProofJob",
    "ProofStore",
    "ProofStoreError",
    "SQLiteProofStore",
    "StoredVariant",
    "VariantRecord",
]

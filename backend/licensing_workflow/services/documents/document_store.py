"""
Document Store

Blob storage for the artifacts a case's reviewers sign. The SQL store
writes through the caller's session so that replacing a document commits
together with the signature that produced it.
"""
import hashlib
from abc import ABC, abstractmethod
from typing import Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...clock import utc_now
from ...models.db_models import CaseDocumentDB, DocumentType


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class DocumentStore(ABC):
    """Storage contract for case artifacts."""

    @abstractmethod
    def get_document(self, case_id: str, document_type: DocumentType) -> Optional[bytes]:
        raise NotImplementedError

    @abstractmethod
    def replace_document(self, case_id: str, document_type: DocumentType, content: bytes) -> str:
        """Store `content` (creating or replacing). Returns the artifact reference."""
        raise NotImplementedError

    def get_document_hash(self, case_id: str, document_type: DocumentType) -> Optional[str]:
        content = self.get_document(case_id, document_type)
        return content_hash(content) if content is not None else None


class SqlDocumentStore(DocumentStore):
    """Documents in the case_documents table. Never commits."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _row(self, case_id: str, document_type: DocumentType) -> Optional[CaseDocumentDB]:
        return (
            self.db.query(CaseDocumentDB)
            .filter(CaseDocumentDB.case_id == case_id, CaseDocumentDB.document_type == document_type)
            .first()
        )

    def get_document(self, case_id: str, document_type: DocumentType) -> Optional[bytes]:
        row = self._row(case_id, document_type)
        return row.content if row else None

    def get_document_hash(self, case_id: str, document_type: DocumentType) -> Optional[str]:
        row = self._row(case_id, document_type)
        return row.content_hash if row else None

    def replace_document(self, case_id: str, document_type: DocumentType, content: bytes) -> str:
        row = self._row(case_id, document_type)
        now = utc_now()
        if row is None:
            row = CaseDocumentDB(
                id=str(uuid4()),
                case_id=case_id,
                document_type=document_type,
                content=content,
                content_hash=content_hash(content),
                version=1,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
        else:
            row.content = content
            row.content_hash = content_hash(content)
            row.version = (row.version or 0) + 1
            row.updated_at = now
        self.db.flush()
        return f"{row.id}:v{row.version}"


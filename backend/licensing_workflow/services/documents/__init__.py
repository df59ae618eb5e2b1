from .document_store import DocumentStore, SqlDocumentStore, content_hash

__all__ = ['DocumentStore', 'SqlDocumentStore', 'content_hash']

"""
Raw data access for CRM entities.

Repositories perform no authorization or validation of their own; they are
only ever reached through the secure services in
``upface_crm.business.services``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from upface_crm.data.store import DocumentStore


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Repository:
    """Timestamped CRUD over one collection."""

    collection: str = ''

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        document = dict(data, created_at=now, updated_at=now)
        document['id'] = self.store.insert(self.collection, document)
        return document

    def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(self.collection, doc_id)

    def update(self, doc_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self.store.update(self.collection, doc_id, dict(changes, updated_at=utcnow())):
            return None
        return self.get(doc_id)

    def delete(self, doc_id: str) -> bool:
        return self.store.delete(self.collection, doc_id)

    def find(self, limit: Optional[int] = None, **filters) -> List[Dict[str, Any]]:
        return self.store.query(
            self.collection, filters=filters, order_by='created_at', limit=limit
        )


class ClientRepository(Repository):
    collection = 'clients'

    def list_assigned_to(self, user_id: str) -> List[Dict[str, Any]]:
        return self.find(assigned_to=user_id)


class TaskRepository(Repository):
    collection = 'tasks'

    def list_for_assignee(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.query(
            self.collection, filters={'assigned_to': user_id}, order_by='due_date',
            descending=False,
        )


class TaskCommentRepository(Repository):
    collection = 'task_comments'

    def list_for_task(self, task_id: str) -> List[Dict[str, Any]]:
        return self.store.query(
            self.collection, filters={'task_id': task_id}, order_by='created_at',
            descending=False,
        )


class TaskAttachmentRepository(Repository):
    collection = 'task_attachments'


class InquiryRepository(Repository):
    collection = 'inquiries'

    def list_by_status(self, status: str) -> List[Dict[str, Any]]:
        return self.find(status=status)


class InteractionRepository(Repository):
    collection = 'interactions'

    def list_for_client(self, client_id: str) -> List[Dict[str, Any]]:
        return self.store.query(
            self.collection, filters={'client_id': client_id}, order_by='date'
        )


class UserRepository(Repository):
    collection = 'users'

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        matches = self.find(limit=1, email=email.strip().lower())
        return matches[0] if matches else None

    def list_by_roles(self, roles: Iterable[str]) -> List[Dict[str, Any]]:
        return self.store.query(
            self.collection, filters={'role': list(roles)}, order_by='name',
            descending=False,
        )


class Repositories:
    """Bundle of every repository over one store."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.clients = ClientRepository(store)
        self.tasks = TaskRepository(store)
        self.task_comments = TaskCommentRepository(store)
        self.task_attachments = TaskAttachmentRepository(store)
        self.inquiries = InquiryRepository(store)
        self.interactions = InteractionRepository(store)
        self.users = UserRepository(store)

from typing import Optional, List
import logging

from firebase_admin import firestore

from json4ai.core.error_handler import DatabaseError
from json4ai.core.firebase_manager import FirebaseManager
from json4ai.core.models import PromptRecord
from json4ai.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class PromptStore:
    """
    Generated prompts.

    Expired records are removed by a Firestore TTL policy on ``expires_at``;
    reads filter them out in case the purge has not run yet.
    """

    def __init__(self, firebase: Optional[FirebaseManager] = None, collection_name: str = 'prompts'):
        self.firebase = firebase or FirebaseManager.get_instance()
        self.collection_name = collection_name

    def save(self, record: PromptRecord) -> PromptRecord:
        try:
            self.firebase.collection(self.collection_name).document(record.id).set(record.model_dump())
        except Exception as e:
            raise DatabaseError(f"Failed to save prompt {record.id}", error_code="WRITE_FAILED", details=str(e)) from e
        return record

    def list_for_user(self, user_id: str, limit: int = 20) -> List[PromptRecord]:
        now = utcnow()
        query = (self.firebase.collection(self.collection_name)
                 .where('user_id', '==', user_id)
                 .order_by('created_at', direction=firestore.Query.DESCENDING)
                 .limit(limit))
        records = []
        for doc in query.stream():
            record = PromptRecord(**doc.to_dict())
            if record.expires_at is None or record.expires_at > now:
                records.append(record)
        return records

"""
Document store for subscriber records.

The core only needs single-document atomicity: every mutation goes through
compare_and_set, which writes the new state only if the stored version is
still the one the caller read.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging

from firebase_admin import firestore

from json4ai.config.environment import Environment
from json4ai.core.error_handler import ConcurrencyConflict, DatabaseError
from json4ai.core.firebase_manager import FirebaseManager
from json4ai.core.models import User
from json4ai.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# field -> value (equality), (operator, value), or a list of (operator, value)
Filters = Dict[str, Union[Any, Tuple[str, Any], List[Tuple[str, Any]]]]


class UserStore(ABC):
    """Storage capability the usage gate and reconciler are built on"""

    @abstractmethod
    def find_by_id(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    def find_one(self, field: str, value: Any) -> Optional[User]:
        """First user whose (possibly dotted) field equals value"""
        ...

    @abstractmethod
    def find(self, filters: Optional[Filters] = None) -> List[User]:
        ...

    @abstractmethod
    def create(self, user: User) -> User:
        ...

    @abstractmethod
    def compare_and_set(self, user: User, expected_version: int) -> bool:
        """
        Persist user if the stored version still equals expected_version.

        On success the stored and in-memory version become expected_version + 1.

        Returns:
            bool: False when another writer got there first
        """
        ...


class FirestoreUserStore(UserStore):
    """UserStore backed by a Firestore collection"""

    def __init__(self, firebase: Optional[FirebaseManager] = None, collection_name: Optional[str] = None):
        self.firebase = firebase or FirebaseManager.get_instance()
        self.collection_name = collection_name or Environment.get_firebase_config()['usersCollection']

    def _collection(self):
        return self.firebase.collection(self.collection_name)

    def find_by_id(self, user_id: str) -> Optional[User]:
        try:
            doc = self._collection().document(user_id).get()
        except Exception as e:
            raise DatabaseError(f"Failed to read user {user_id}", error_code="READ_FAILED", details=str(e)) from e
        if not doc.exists:
            return None
        return User.from_dict(doc.to_dict(), doc_id=doc.id)

    def find_one(self, field: str, value: Any) -> Optional[User]:
        try:
            docs = list(self._collection().where(field, '==', value).limit(1).stream())
        except Exception as e:
            raise DatabaseError(f"Failed to query users by {field}", error_code="QUERY_FAILED", details=str(e)) from e
        if not docs:
            return None
        return User.from_dict(docs[0].to_dict(), doc_id=docs[0].id)

    def find(self, filters: Optional[Filters] = None) -> List[User]:
        query = self._collection()
        for field, condition in (filters or {}).items():
            if isinstance(condition, list):
                conditions = condition
            elif isinstance(condition, tuple):
                conditions = [condition]
            else:
                conditions = [('==', condition)]
            for operator, value in conditions:
                query = query.where(field, operator, value)

        users = []
        try:
            for doc in query.stream():
                try:
                    users.append(User.from_dict(doc.to_dict(), doc_id=doc.id))
                except Exception as e:
                    logger.error(f"Skipping unreadable user document {doc.id}: {str(e)}")
        except Exception as e:
            raise DatabaseError("Failed to list users", error_code="QUERY_FAILED", details=str(e)) from e
        return users

    def create(self, user: User) -> User:
        user.version = 0
        try:
            # create() fails if the id is taken, so registration never overwrites
            self._collection().document(user.id).create(user.to_dict())
        except Exception as e:
            raise DatabaseError(f"Failed to create user {user.id}", error_code="CREATE_FAILED", details=str(e)) from e
        logger.info(f"Created user {user.id}")
        return user

    def compare_and_set(self, user: User, expected_version: int) -> bool:
        doc_ref = self._collection().document(user.id)
        user.updated_at = utcnow()
        data = user.to_dict()
        data['version'] = expected_version + 1

        @firestore.transactional
        def _write(transaction) -> bool:
            snapshot = doc_ref.get(transaction=transaction)
            if not snapshot.exists:
                return False
            if (snapshot.to_dict() or {}).get('version', 0) != expected_version:
                return False
            transaction.set(doc_ref, data)
            return True

        try:
            written = _write(self.firebase.transaction())
        except Exception as e:
            raise DatabaseError(f"Failed to update user {user.id}", error_code="WRITE_FAILED", details=str(e)) from e

        if written:
            user.version = expected_version + 1
        else:
            logger.info(f"Version conflict on user {user.id} (expected {expected_version})")
        return written


def update_with_retry(store: UserStore, user_id: str, mutate: Callable[[User], bool],
                      max_retries: Optional[int] = None) -> Optional[User]:
    """
    Read-modify-write one user under the version check.

    Args:
        store: User store
        user_id: User to update
        mutate: Changes the user in place; returns False to skip the write
        max_retries: Attempts before giving up

    Returns:
        The stored user after the update (or unchanged), None if it does not exist

    Raises:
        ConcurrencyConflict: if every attempt lost against another writer
    """
    retries = max_retries or Environment.ERROR_HANDLING['max_retries']
    for attempt in range(retries):
        user = store.find_by_id(user_id)
        if user is None:
            return None
        expected_version = user.version
        if not mutate(user):
            return user
        if store.compare_and_set(user, expected_version):
            return user
        logger.warning(f"Conflict updating user {user_id}, attempt {attempt + 1}")
    raise ConcurrencyConflict(user_id)

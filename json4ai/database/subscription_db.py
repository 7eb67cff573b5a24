from typing import Optional, List, Dict
import logging

from firebase_admin import firestore

from json4ai.config.environment import Environment
from json4ai.core.firebase_manager import FirebaseManager
from json4ai.database.schema import SubscriptionHistory


class SubscriptionDB:
    """Repository for the subscription history audit trail"""

    def __init__(self, firebase: Optional[FirebaseManager] = None, collection_name: Optional[str] = None):
        self.firebase = firebase or FirebaseManager.get_instance()
        self.collection_name = collection_name or Environment.get_firebase_config()['historyCollection']
        self.logger = logging.getLogger(__name__)

    def add_subscription_history(self, history: SubscriptionHistory) -> bool:
        """Add an entry to the user's subscription history"""
        try:
            self.firebase.collection(self.collection_name).add(history.model_dump())
            return True
        except Exception as e:
            self.logger.error(f"Error adding subscription history: {str(e)}")
            return False

    def get_subscription_history(self, user_id: str, limit: int = 50) -> List[Dict]:
        """Get the user's subscription history, newest first"""
        try:
            query = (self.firebase.collection(self.collection_name)
                     .where('user_id', '==', user_id)
                     .order_by('event_time', direction=firestore.Query.DESCENDING)
                     .limit(limit))
            return [doc.to_dict() for doc in query.stream()]
        except Exception as e:
            self.logger.error(f"Error getting subscription history: {str(e)}")
            return []

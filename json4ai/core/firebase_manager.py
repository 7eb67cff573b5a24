import firebase_admin
from firebase_admin import credentials, firestore
import json
import os
import logging
from typing import Optional, Dict, Any

from json4ai.config.environment import Environment
from json4ai.core.error_handler import ConfigurationError

logger = logging.getLogger(__name__)


class FirebaseManager:
    """Manages Firebase Admin initialization and the Firestore client."""

    _instance = None

    @classmethod
    def get_instance(cls) -> 'FirebaseManager':
        """Get the shared FirebaseManager for this process"""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self, app: Optional[firebase_admin.App] = None):
        self._app = app
        self._db = None

    @staticmethod
    def _load_credentials() -> Dict[str, Any]:
        """Read service-account credentials from env or a credentials file."""
        config = Environment.get_firebase_config()
        if config.get('credentials'):
            return json.loads(config['credentials'])

        # Look for credentials file in common locations
        cred_paths = [
            config.get('credentialsPath'),
            "firebase_credentials.json",
            os.path.expanduser("~/.config/firebase/credentials.json"),
            "/etc/firebase/credentials.json"
        ]
        for path in cred_paths:
            if path and os.path.exists(path):
                with open(path, 'r') as f:
                    return json.load(f)

        raise ConfigurationError(
            "Firebase credentials not found. Set FIREBASE_CREDENTIALS or FIREBASE_CREDENTIALS_PATH environment variable.",
            error_code="FIREBASE_CREDENTIALS"
        )

    def initialize(self) -> None:
        """Initialize Firebase connection"""
        if self._db is not None:
            return
        if self._app is None:
            try:
                self._app = firebase_admin.get_app()
                logger.info("Using existing Firebase Admin SDK app")
            except ValueError:
                cred = credentials.Certificate(self._load_credentials())
                self._app = firebase_admin.initialize_app(cred)
                logger.info("Firebase Admin SDK initialized successfully")
        self._db = firestore.client(app=self._app)

    @property
    def db(self):
        """Get Firestore database instance"""
        if self._db is None:
            self.initialize()
        return self._db

    def collection(self, name: str):
        """Get a collection reference"""
        return self.db.collection(name)

    def transaction(self):
        """Get a new transaction"""
        return self.db.transaction()

"""Firebase Admin setup and the shared async Firestore client for graph storage."""

import json
from typing import Optional

import firebase_admin
import structlog
from firebase_admin import credentials
from google.cloud.firestore_v1.async_client import AsyncClient

from libs.common.errors import ConfigError
from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

_firestore_client: Optional[AsyncClient] = None


def load_credentials(settings: Settings) -> Optional[credentials.Certificate]:
    """Service-account credentials from inline JSON or a file path, if configured.

    Raises:
        ConfigError: the configured credentials cannot be read.
    """
    if settings.firebase_admin_sdk_json:
        try:
            return credentials.Certificate(json.loads(settings.firebase_admin_sdk_json))
        except json.JSONDecodeError as e:
            raise ConfigError("ROLEGRAPH_FIREBASE_ADMIN_SDK_JSON is not valid JSON") from e
    if settings.firebase_admin_sdk_path:
        try:
            return credentials.Certificate(settings.firebase_admin_sdk_path)
        except FileNotFoundError as e:
            raise ConfigError(f"Firebase credentials file not found: {settings.firebase_admin_sdk_path}") from e
    return None


def initialize_firebase_app(settings: Optional[Settings] = None) -> None:
    """Initialize the default Firebase app once per process."""
    if firebase_admin._apps:
        return

    settings = settings or get_settings()
    cred = load_credentials(settings)
    options = {"projectId": settings.firestore_project} if settings.firestore_project else None

    if cred is None:
        logger.warning("No Firebase credentials configured, using application default credentials or the emulator")
    firebase_admin.initialize_app(cred, options)
    logger.info("Firebase app initialized", project=settings.firestore_project, service_account=cred is not None)


def get_firestore_async_client() -> AsyncClient:
    """Shared async Firestore client for the configured project and database."""
    global _firestore_client

    if _firestore_client is None:
        settings = get_settings()
        initialize_firebase_app(settings)
        _firestore_client = AsyncClient(project=settings.firestore_project, database=settings.firestore_database)
        logger.info("Firestore client created", project=settings.firestore_project, database=settings.firestore_database)
    return _firestore_client


def reset_firestore_client() -> None:
    global _firestore_client
    _firestore_client = None

import logging
import os
from typing import Optional

from google.cloud import secretmanager

logger = logging.getLogger(__name__)


def get_secret_value(secret_name: str, project_id: Optional[str] = None) -> str:
    if not secret_name:
        raise ValueError("secret_name is required")
    project = project_id or os.getenv("GOOGLE_CLOUD_PROJECT")
    if not project:
        raise RuntimeError("GOOGLE_CLOUD_PROJECT not set")

    client = secretmanager.SecretManagerServiceClient()
    secret_path = f"projects/{project}/secrets/{secret_name}/versions/latest"
    response = client.access_secret_version(request={"name": secret_path})
    return response.payload.data.decode("utf-8")


def resolve_credential(direct_value: Optional[str], secret_name: Optional[str],
                       project_id: Optional[str] = None) -> Optional[str]:
    """
    Return a credential from the environment, else from Secret Manager.

    Returns None when neither source is configured or the secret cannot be
    read; callers decide whether that is fatal.
    """
    if direct_value:
        return direct_value
    if not secret_name:
        return None
    try:
        return get_secret_value(secret_name, project_id)
    except Exception as e:
        logger.warning(f"Failed to read secret {secret_name}: {e}")
        return None

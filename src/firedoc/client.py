"""
Firestore connection and database provisioning for firedoc library.

This module builds google.cloud.firestore clients from the configured
credential sources and creates named databases through the gcloud CLI.
"""

import json
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import google.auth
from google.api_core import exceptions as gexc
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import firestore
from google.oauth2 import credentials as oauth2_credentials
from loguru import logger

from .exceptions import (
    ConfigurationError,
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    RetryExhaustedError,
    StoreOperationError,
)
from .utils import retry_with_backoff, timing_context

SCOPES = ["https://www.googleapis.com/auth/datastore"]
DEFAULT_LOCATION = "nam5"


@dataclass
class Credentials:
    """
    Credential sources for a Firestore connection.

    At most one of file and json is used, file first. When neither is set
    the Application Default Credentials are used. access_token_file is
    only needed for database provisioning.
    """
    file: Optional[str] = None
    json: Optional[Union[str, bytes, Dict[str, Any]]] = None
    access_token_file: Optional[str] = None

    @classmethod
    def from_config(cls, config: Any) -> 'Credentials':
        return cls(**config.get_credentials())


def build_credentials(credentials: Optional[Credentials]) -> Any:
    """
    Turn credential sources into a google.auth credentials object.

    Args:
        credentials: Credential sources (None for Application Default Credentials)

    Returns:
        google.auth credentials, or None to let the client find its own

    Raises:
        ConfigurationError: If the credential source cannot be loaded
    """
    if credentials is None:
        return None

    try:
        if credentials.file:
            creds, _ = google.auth.load_credentials_from_file(credentials.file, scopes=SCOPES)
            logger.debug(f"Loaded credentials from file {credentials.file}")
            return creds

        if credentials.json:
            info = credentials.json
            if isinstance(info, (str, bytes)):
                info = json.loads(info)
            creds, _ = google.auth.load_credentials_from_dict(info, scopes=SCOPES)
            logger.debug("Loaded credentials from JSON")
            return creds

        if credentials.access_token_file:
            return oauth2_credentials.Credentials(token=read_access_token(credentials.access_token_file))

    except (DefaultCredentialsError, ValueError) as e:
        raise ConfigurationError(f"Failed to load credentials: {str(e)}", config_key="credentials") from e

    return None


def read_access_token(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            token = f.read().strip()
    except OSError as e:
        raise ConfigurationError(f"Cannot read access token file {path}: {str(e)}",
                                 config_key="access_token_file") from e
    if not token:
        raise ConfigurationError(f"Access token file is empty: {path}", config_key="access_token_file")
    return token


def create_firestore_client(project: Optional[str] = None, database: Optional[str] = None,
                            credentials: Optional[Credentials] = None) -> firestore.Client:
    """
    Create a google.cloud.firestore client.

    Args:
        project: Google Cloud project id (defaults to the environment's)
        database: Named database id (defaults to "(default)")
        credentials: Credential sources

    Returns:
        firestore.Client: Connected client

    Raises:
        ConfigurationError: If no usable credentials or project are found
    """
    creds = build_credentials(credentials)

    kwargs: Dict[str, Any] = {"project": project, "credentials": creds}
    if database:
        kwargs["database"] = database

    try:
        client = firestore.Client(**kwargs)
    except DefaultCredentialsError as e:
        raise ConfigurationError(f"Failed to create Firestore client: {str(e)}", config_key="credentials") from e

    logger.info(f"Firestore client initialized for project {client.project} database {database or '(default)'}")
    return client


def database_exists(project: str, database: str, credentials: Optional[Credentials] = None) -> bool:
    """
    Check whether a named database exists by listing its root collections.

    Raises:
        StoreOperationError: On any failure other than "database not found"
    """
    client = create_firestore_client(project, database, credentials)
    try:
        for _ in client.collections():
            break
        return True
    except gexc.NotFound as e:
        logger.debug(f"Database {database} not found: {str(e)}")
        return False
    except gexc.GoogleAPIError as e:
        raise StoreOperationError(f"Failed to check database {database}: {str(e)}",
                                  operation="database_exists", path=database) from e
    finally:
        client.close()


def create_database(
    project: str,
    database: str,
    credentials: Credentials,
    location: str = DEFAULT_LOCATION,
    poll_attempts: int = 5,
    poll_delay: float = 2.0,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> List[str]:
    """
    Create a named Firestore database with the gcloud CLI and wait for it.

    Args:
        project: Google Cloud project id
        database: Database id to create
        credentials: Must carry access_token_file for gcloud
        location: Database location
        poll_attempts: Existence checks after gcloud returns
        poll_delay: Seconds between existence checks
        runner: subprocess.run compatible callable

    Returns:
        List[str]: gcloud output lines

    Raises:
        DocumentAlreadyExistsError: If the database already exists
        ConfigurationError: If gcloud or the access token file is missing
        StoreOperationError: If gcloud fails or the database never appears
    """
    if database_exists(project, database, credentials):
        raise DocumentAlreadyExistsError(f"Database {database} already exists",
                                         operation="create_database", path=database)

    gcloud = shutil.which("gcloud")
    if gcloud is None:
        raise ConfigurationError("gcloud CLI not found on PATH", config_key="gcloud")

    if not credentials.access_token_file:
        raise ConfigurationError("Missing access token file", config_key="access_token_file")

    cmd = [
        gcloud,
        f"--access-token-file={credentials.access_token_file}",
        f"--project={project}",
        "firestore",
        "databases",
        "create",
        f"--database={database}",
        f"--location={location}",
        "--type=firestore-native",
    ]

    logger.info(f"Creating Firestore database {database} in project {project}")
    with timing_context(f"create_database(database={database})"):
        result = runner(cmd, capture_output=True, text=True)
    lines = ((result.stdout or "") + (result.stderr or "")).splitlines()

    if result.returncode != 0:
        logger.error(f"gcloud exited with status {result.returncode} creating database {database}")
        raise StoreOperationError(
            f"gcloud failed to create database {database}",
            operation="create_database",
            path=database,
            details={"returncode": result.returncode, "output": lines}
        )

    @retry_with_backoff(max_attempts=poll_attempts, base_delay=poll_delay, max_delay=poll_delay,
                        exceptions=(DocumentNotFoundError,))
    def wait_for_database():
        if not database_exists(project, database, credentials):
            raise DocumentNotFoundError(f"Database {database} not visible yet",
                                        operation="create_database", path=database)

    try:
        wait_for_database()
    except RetryExhaustedError as e:
        raise StoreOperationError(f"Database {database} creation failed or is delayed",
                                  operation="create_database", path=database) from e

    logger.info(f"Database {database} created")
    return lines

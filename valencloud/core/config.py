"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    PORT                 - HTTP listener port for the service (default: 3000)
    HOST                 - HTTP bind address (default: 0.0.0.0)
    RELEASE_BRANCH       - Branch whose successful builds get published (default: main)
    IMAGE_REPOSITORY     - Image repository to tag and push (default: valencloud/hello-service)
    REGISTRY             - Registry host; empty means Docker Hub
    REGISTRY_USERNAME    - Registry login (publish stage only)
    REGISTRY_TOKEN       - Registry access token (publish stage only)
    TEST_IMAGE           - Container image the test stage runs in (default: python:3.11-slim)
    TEST_TIMEOUT_SECONDS - Max seconds the test container may run (default: 300)
    LOG_LEVEL            - Root log level (default: INFO)
    LOG_DIR              - Directory for the daily log file (default: logs)

Credential Scope:
    REGISTRY_USERNAME / REGISTRY_TOKEN are not exported as module constants.
    They are read on demand by load_registry_credentials(), which only the
    publish stage calls. The test and build stages never see them.
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

PORT = int(os.getenv("PORT", 3000))
HOST = os.getenv("HOST", "0.0.0.0")

RELEASE_BRANCH = os.getenv("RELEASE_BRANCH", "main")
IMAGE_REPOSITORY = os.getenv("IMAGE_REPOSITORY", "valencloud/hello-service")
REGISTRY = os.getenv("REGISTRY", "")

TEST_IMAGE = os.getenv("TEST_IMAGE", "python:3.11-slim")

# Execution timeout in seconds - a hung test run is killed and counted as a failure
TEST_TIMEOUT_SECONDS = int(os.getenv("TEST_TIMEOUT_SECONDS", 300))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")


class RegistryCredentials(BaseModel):
    username: str
    token: str
    registry: str = ""

    def __repr__(self) -> str:
        return f"RegistryCredentials(username={self.username!r}, registry={self.registry!r})"

    __str__ = __repr__


def load_registry_credentials() -> Optional[RegistryCredentials]:
    """Read registry credentials from the environment, or None if either is missing."""
    username = os.getenv("REGISTRY_USERNAME", "")
    token = os.getenv("REGISTRY_TOKEN", "")
    if not username or not token:
        return None
    return RegistryCredentials(username=username, token=token, registry=REGISTRY)

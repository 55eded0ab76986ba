"""AWS client management and session handling."""

import threading

import boto3
from botocore.config import Config
from typing import Optional, Dict, Any
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientManager:
    """Manages boto3 sessions and cached clients.

    Credentials come from boto3's default chain (environment, profile,
    instance role); this class only picks the profile and region.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50,
        session: Optional[boto3.Session] = None
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the connection pool
            session: Pre-built session (used by tests)
        """
        self.profile = profile
        self.region = region
        self.max_pool_connections = max_pool_connections
        self._session: Optional[boto3.Session] = session
        self._clients: Dict[str, Any] = {}
        # Executor workers share one manager; boto3 sessions are not thread-safe
        self._lock = threading.RLock()

        # botocore's own retries stay short; transient errors are retried by RetryStrategy
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'standard',
                'max_attempts': 2
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        with self._lock:
            if self._session is None:
                kwargs = {}
                if self.profile:
                    kwargs['profile_name'] = self.profile
                if self.region:
                    kwargs['region_name'] = self.region

                self._session = boto3.Session(**kwargs)
                logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                            f"Profile: {self.profile or 'default'}")

            return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'cloudcontrol')

        Returns:
            Boto3 client for the service
        """
        with self._lock:
            if service_name in self._clients:
                return self._clients[service_name]

            client = self.session.client(service_name, config=self._boto_config)
            self._clients[service_name] = client

        logger.debug(f"Created {service_name} client")

        return client

    def get_region(self) -> str:
        """Get the AWS region.

        Returns:
            AWS region name
        """
        return self.session.region_name

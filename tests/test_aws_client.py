"""Tests for the boto3 client manager."""

import threading
import time

from stackweave.utils import aws_client
from stackweave.utils.aws_client import AWSClientManager


class SlowSession:
    """Session double that is slow to build clients and counts what it builds."""

    created = []

    def __init__(self, **kwargs):
        self.region_name = kwargs.get('region_name')
        self.clients = []
        SlowSession.created.append(self)

    def client(self, service_name, config=None):
        time.sleep(0.01)
        client = object()
        self.clients.append((service_name, client))
        return client


class TestAWSClientManager:
    """Tests for AWSClientManager."""

    def test_concurrent_first_use(self, monkeypatch) -> None:
        """Test that threads asking at once share one session and one client."""
        SlowSession.created = []
        monkeypatch.setattr(aws_client.boto3, "Session", SlowSession)
        manager = AWSClientManager(region="eu-west-1")

        barrier = threading.Barrier(8, timeout=5)
        clients = []

        def worker():
            barrier.wait()
            clients.append(manager.get_client("cloudcontrol"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert len(SlowSession.created) == 1
        assert len(SlowSession.created[0].clients) == 1
        assert len(clients) == 8
        assert all(client is clients[0] for client in clients)
        assert manager.get_region() == "eu-west-1"

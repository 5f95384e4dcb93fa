"""End-to-end wire checks against a real loopback HTTP server standing in for the EC2 query API."""

from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs

import pytest

from cloud_peer_discovery.config import AppConfig, EC2Config, EndpointSelectionPolicy, RetryConfig
from cloud_peer_discovery.coordinator import DiscoveryCoordinator
from cloud_peer_discovery.discovery.fetcher import InventoryQuery, QueryApiFetcher
from cloud_peer_discovery.discovery.models import PeerEndpoint
from cloud_peer_discovery.exceptions import FetchRejected


class _FakeEC2Handler(BaseHTTPRequestHandler):
    """Answers DescribeInstances from the pages configured on the server."""

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        params = {k: v[0] for k, v in parse_qs(self.rfile.read(length).decode("utf-8")).items()}
        self.server.received.append(params)

        if params.get("Action") != "DescribeInstances":
            self._reply(400, b"<Response><Errors><Error><Code>InvalidAction</Code></Error></Errors></Response>")
            return
        self._reply(200, self.server.pages[params.get("NextToken")])

    def _reply(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/xml; charset=UTF-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def fake_ec2():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _FakeEC2Handler)
    server.pages = {}
    server.received = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _endpoint(server) -> str:
    host, port = server.server_address[:2]
    return f"http://{host}:{port}/"


def test_discovers_peers_over_http(fake_ec2, make_xml, make_instance):
    fake_ec2.pages = {
        None: make_xml([
            [make_instance("i-1", private_ip="127.0.0.10")],
            [make_instance("i-2", private_ip="127.0.0.11", state_code=80, state_name="stopped")],
        ], next_token="second"),
        "second": make_xml([[make_instance("i-3", private_ip="127.0.0.12")]]),
    }
    config = AppConfig(
        ec2=EC2Config(endpoint=_endpoint(fake_ec2), wire_format="query"),
        endpoint=EndpointSelectionPolicy(port=9300),
    )
    coord = DiscoveryCoordinator.from_config(config)

    snapshot = coord.refresh()

    assert snapshot.endpoints == {PeerEndpoint("127.0.0.10", 9300), PeerEndpoint("127.0.0.12", 9300)}
    assert snapshot.instance_count == 3
    assert [r.get("NextToken") for r in fake_ec2.received] == [None, "second"]
    first = fake_ec2.received[0]
    assert first["Action"] == "DescribeInstances"
    assert first["Filter.1.Name"] == "instance-state-name"
    assert first["Filter.1.Value.1"] == "running"


def test_rejected_action_surfaces_status(fake_ec2):
    fetcher = QueryApiFetcher(EC2Config(endpoint=_endpoint(fake_ec2)), RetryConfig(max_attempts=3))
    # _request skips the client-side action check, so the server sees the bad action
    with pytest.raises(FetchRejected) as excinfo:
        fetcher._request(InventoryQuery(action="RunInstances"), None)
    assert excinfo.value.status_code == 400
    assert len(fake_ec2.received) == 1

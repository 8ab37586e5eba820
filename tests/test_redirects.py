"""Tests for the redirect policy and the client session wiring."""

from unittest.mock import MagicMock

import pytest
import requests

from proximity.config import ProxyConfig
from proximity.core.client import ProxySession, create_session
from proximity.core.diagnostics import DiagnosticRecorder
from proximity.core.errors import TooManyRedirects
from proximity.core.redirects import RedirectPolicy
from proximity.core.tls import build_transport


# ── Helpers ──────────────────────────────────────────────────────────────────


def _redirect(previous_headers, history_len=0, status=302):
    previous = requests.Request("GET", "http://a.example/start", headers=previous_headers).prepare()
    resp = requests.Response()
    resp.status_code = status
    resp.request = previous
    resp.history = [MagicMock()] * history_len
    return resp


def _next_request(url="http://b.example/next", headers=None, body=None):
    req = requests.Request("GET", url, headers=headers or {}).prepare()
    req.body = body
    return req


# ── RedirectPolicy ───────────────────────────────────────────────────────────


class TestRedirectPolicy:
    def test_copies_previous_headers(self):
        policy = RedirectPolicy()
        resp = _redirect({"Authorization": "Bearer abc", "Cookie": "sid=1", "X-Trace": "t"})
        nxt = _next_request()
        policy(nxt, resp)
        assert nxt.headers["Authorization"] == "Bearer abc"
        assert nxt.headers["Cookie"] == "sid=1"
        assert nxt.headers["X-Trace"] == "t"

    def test_previous_value_wins(self):
        policy = RedirectPolicy()
        resp = _redirect({"Cookie": "sid=1"})
        nxt = _next_request(headers={"Cookie": "from-jar=2"})
        policy(nxt, resp)
        assert nxt.headers["Cookie"] == "sid=1"

    def test_set_cookie_not_applied(self):
        policy = RedirectPolicy()
        resp = _redirect({"X-Trace": "t"})
        nxt = _next_request(headers={"Cookie": "from-redirect=1"})
        policy(nxt, resp)
        assert "Cookie" not in nxt.headers
        assert nxt.headers["X-Trace"] == "t"

    def test_host_not_copied(self):
        policy = RedirectPolicy()
        resp = _redirect({"Host": "a.example", "X-Trace": "t"})
        nxt = _next_request()
        policy(nxt, resp)
        assert "Host" not in nxt.headers
        assert nxt.headers["X-Trace"] == "t"

    def test_body_headers_dropped_with_body(self):
        policy = RedirectPolicy()
        resp = _redirect({"Content-Length": "7", "Content-Type": "text/plain", "X-Trace": "t"}, status=303)
        nxt = _next_request(body=None)
        policy(nxt, resp)
        assert "Content-Length" not in nxt.headers
        assert "Content-Type" not in nxt.headers
        assert nxt.headers["X-Trace"] == "t"

    def test_body_headers_kept_when_body_kept(self):
        policy = RedirectPolicy()
        resp = _redirect({"Content-Length": "7", "Content-Type": "text/plain"}, status=307)
        nxt = _next_request(body=b"payload")
        policy(nxt, resp)
        assert nxt.headers["Content-Type"] == "text/plain"

    def test_tenth_hop_allowed(self):
        policy = RedirectPolicy(max_redirects=10)
        policy(_next_request(), _redirect({}, history_len=9))

    def test_eleventh_hop_rejected(self):
        policy = RedirectPolicy(max_redirects=10)
        with pytest.raises(TooManyRedirects) as exc:
            policy(_next_request(), _redirect({}, history_len=10))
        assert exc.value.hops == 11
        assert exc.value.limit == 10
        assert "stopped after 10 redirects" in str(exc.value)

    def test_custom_limit(self):
        policy = RedirectPolicy(max_redirects=1)
        policy(_next_request(), _redirect({}, history_len=0))
        with pytest.raises(TooManyRedirects):
            policy(_next_request(), _redirect({}, history_len=1))

    def test_records_hop(self):
        lines = []
        policy = RedirectPolicy(DiagnosticRecorder(1, sink=lines.append))
        policy(_next_request(), _redirect({"X-Trace": "t"}, history_len=2))
        assert lines[0] == "----- REDIRECT (3) ------"
        assert "GET /next HTTP/1.1" in lines[1]
        assert "X-Trace: t" in lines[1]

    def test_silent_at_zero(self):
        lines = []
        policy = RedirectPolicy(DiagnosticRecorder(0, sink=lines.append))
        policy(_next_request(), _redirect({}))
        assert lines == []


# ── ProxySession ─────────────────────────────────────────────────────────────


class TestProxySession:
    def setup_method(self):
        self.policy = RedirectPolicy()
        self.session = create_session(build_transport(ProxyConfig()), self.policy)

    def teardown_method(self):
        self.session.close()

    def test_type(self):
        assert isinstance(self.session, ProxySession)
        assert self.session.redirect_policy is self.policy

    def test_no_default_headers(self):
        prepared = self.session.prepare_request(requests.Request("GET", "http://a.example/", headers={"X-A": "1"}))
        assert dict(prepared.headers) == {"X-A": "1"}

    def test_ignores_environment(self):
        assert self.session.trust_env is False

    def test_adapter_mounted(self):
        transport = self.session.get_adapter("https://a.example/")
        assert transport is self.session.get_adapter("http://a.example/")
        assert transport.ssl_context is not None

    def test_policy_is_the_limit(self):
        assert self.session.max_redirects > self.policy.max_redirects

    def test_cookies_not_stored(self):
        policy = self.session.cookies._policy
        assert policy.allowed_domains() == []
        assert not policy.set_ok_domain(MagicMock(domain="a.example"), MagicMock())

    def test_rebuild_auth_delegates(self):
        policy = MagicMock()
        policy.max_redirects = 10
        session = ProxySession(build_transport(ProxyConfig()), policy)
        req, resp = _next_request(), _redirect({})
        session.rebuild_auth(req, resp)
        policy.assert_called_once_with(req, resp)
        session.close()

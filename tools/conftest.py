"""
Shared fixtures: a fake Moodle site behind a patched requests.Session, and a
small local portal served over real HTTP for cookie and redirect handling.
"""

import tempfile
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from unittest.mock import Mock, patch, MagicMock

import pytest
import requests

from moodle_client import MoodleClient, MoodleConfig, MoodleSession, RunContext

BASE_URL = "https://moodle.example.org"
LOGIN_URL = f"{BASE_URL}/login/index.php"
COOKIES = {"MoodleSession": "abc123", "MOODLEID1_": "xyz"}


# ============ CANNED PAGES ============

LOGIN_FORM = f"""
<html><body>
<form action="{LOGIN_URL}" method="post">
  <input type="hidden" name="logintoken" value="tok123">
  <input name="username"><input name="password" type="password">
</form>
</body></html>
"""

LANDING_PAGE = f"""
<html><head><title>Dashboard</title></head><body>
<h2>Meine Kurse</h2>
<div class="coc-course">
  <a href="{BASE_URL}/course/view.php?id=101" title="Scientific Python">Scientific Python</a>
</div>
<div class="coc-course">
  <a href="{BASE_URL}/course/view.php?id=102" title="Datenbanken 2">DB2</a>
  <a href="{BASE_URL}/user/profile.php?id=7" title="Profil">Profil</a>
</div>
<div class="sidebar">
  <a href="{BASE_URL}/course/view.php?id=999" title="Not a card">Elsewhere</a>
</div>
</body></html>
"""

FAILED_LOGIN_PAGE = """
<html><body><div class="loginerrors">Ungültige Anmeldedaten, bitte versuchen Sie es erneut!</div></body></html>
"""


def course_page(*activity_urls: str) -> str:
    items = "\n".join(
        f'<li class="activity"><div class="activityinstance"><a href="{url}">'
        f'<span class="instancename">Activity</span></a></div></li>'
        for url in activity_urls
    )
    return f"<html><body><ul class='section'>{items}</ul></body></html>"


def file_page(file_url: str, name: str) -> str:
    return (
        "<html><body><div class='resourceworkaround'>"
        f"Klicken Sie auf den Link '<a href=\"{file_url}\">{name}</a>', um die Datei anzuzeigen."
        "</div></body></html>"
    )


def folder_page(*entries: tuple) -> str:
    items = "\n".join(
        f'<li><span class="fp-filename-icon"><a href="{url}">'
        f'<span class="fp-icon"><img alt=""></span><span class="fp-filename">{name}</span>'
        f'</a></span></li>'
        for url, name in entries
    )
    return f"<html><body><div class='foldertree'><ul>{items}</ul></div></body></html>"


def url_page(link: str) -> str:
    return (
        "<html><body><div class='urlworkaround'>"
        f"Klicken Sie auf <a href=\"{link}\">{link}</a>, um die Verknüpfung zu öffnen."
        "</div></body></html>"
    )


def moodle_page(title: str) -> str:
    return f"<html><head><title>{title}</title></head><body><p>Inhalt</p></body></html>"


# ============ FAKE SITE ============

def make_response(status: int = 200, text: str = "", content: bytes = None, chunks=None) -> Mock:
    response = Mock()
    response.status_code = status
    response.headers = {}
    response.text = text
    response.content = content if content is not None else text.encode("utf-8")
    body = chunks if chunks is not None else [response.content]
    response.iter_content = lambda chunk_size: iter(body)
    return response


def broken_stream(chunk_size):
    yield b"partial"
    raise requests.exceptions.ChunkedEncodingError("connection reset")


class FakeMoodle:
    """Canned responses keyed by URL, plus a log of every request made."""

    def __init__(self):
        self.landing = LANDING_PAGE
        self.cookies = dict(COOKIES)
        self.pages = {}
        self.files = {}
        self.unreachable = set()
        self.broken_streams = set()
        self.flaky = {}
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))

        if self.flaky.get(url, 0) > 0:
            self.flaky[url] -= 1
            raise requests.exceptions.Timeout(f"timed out: {url}")
        if url in self.unreachable:
            raise requests.exceptions.ConnectionError(f"unreachable: {url}")

        if url == LOGIN_URL:
            return make_response(text=LOGIN_FORM if method == "GET" else self.landing)
        if url in self.broken_streams:
            response = make_response()
            response.iter_content = broken_stream
            return response
        if url in self.files:
            return make_response(content=self.files[url])
        if url in self.pages:
            return make_response(text=self.pages[url])
        return make_response(status=404, text="<html><body>Not found</body></html>")

    def urls_requested(self, method: str = "GET") -> list:
        return [url for m, url, _ in self.requests if m == method]


# ============ FIXTURES ============

@pytest.fixture
def fake_moodle():
    """Patch requests.Session so every request is answered by a FakeMoodle."""
    site = FakeMoodle()
    with patch('moodle_client.requests.Session') as mock_session_class:
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request = site.request
        mock_session.cookies.get_dict = lambda: dict(site.cookies)
        yield site


@pytest.fixture
def config():
    """Create a test configuration."""
    return MoodleConfig(
        base_url=BASE_URL,
        output_dir=tempfile.mkdtemp(),
        request_timeout=5,
        base_delay_ms=0,  # No delay for tests
        max_retries=1
    )


@pytest.fixture
def client(config, fake_moodle):
    return MoodleClient(config)


@pytest.fixture
def session():
    return MoodleSession(cookies=dict(COOKIES), landing_page=LANDING_PAGE)


@pytest.fixture
def context(session):
    return RunContext(session=session)


@pytest.fixture
def output_dir():
    return Path(tempfile.mkdtemp())


# ============ LOCAL HTTP PORTAL ============

LOCAL_LOGIN_FORM = b"""<html><body><form method="post">
<input type="hidden" name="logintoken" value="tok123">
</form></body></html>"""
LOCAL_LANDING = b"<html><body><h2>Meine Kurse</h2></body></html>"
LOCAL_LOGIN_REQUIRED = b"<html><body>Bitte melden Sie sich an</body></html>"
LOCAL_FILE = b"%PDF-1.4 skript"


class LocalPortalHandler(BaseHTTPRequestHandler):
    """Moodle-like routes that set cookies and redirect like the real portal.

    /login/index.php          GET sets MoodleSession=pre, POST sets MoodleSession=live and 303s to /my/
    /pluginfile.php/...       303 to /files/<name>
    /files/<name>             the file with a live session, the login page otherwise
    /mod/page/...             a page that also sets a tracking cookie
    /course/...               a plain page
    """

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        self.handle_route("GET")

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.handle_route("POST")

    def handle_route(self, method):
        cookie = self.headers.get("Cookie", "")
        path = self.path.split("?")[0]
        self.server.seen.append((method, path, cookie))

        if path == "/login/index.php" and method == "GET":
            self.reply(200, LOCAL_LOGIN_FORM, set_cookie="MoodleSession=pre")
        elif path == "/login/index.php":
            self.redirect("/my/", set_cookie="MoodleSession=live")
        elif path == "/my/":
            self.reply(200, LOCAL_LANDING)
        elif path.startswith("/pluginfile.php/"):
            self.redirect("/files/" + path.rsplit("/", 1)[-1])
        elif path.startswith("/files/"):
            body = LOCAL_FILE if "MoodleSession=live" in cookie else LOCAL_LOGIN_REQUIRED
            self.reply(200, body)
        elif path.startswith("/mod/page/"):
            self.reply(200, b"<html><head><title>Seite</title></head></html>", set_cookie="tracking=1")
        elif path.startswith("/course/"):
            self.reply(200, b"<html><head><title>Kurs</title></head></html>")
        else:
            self.reply(404, b"Not found")

    def reply(self, status, body, set_cookie=None):
        self.send_response(status)
        if set_cookie:
            self.send_header("Set-Cookie", f"{set_cookie}; Path=/")
        self.send_header("Content-Type", "text/html")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def redirect(self, location, set_cookie=None):
        self.send_response(303)
        if set_cookie:
            self.send_header("Set-Cookie", f"{set_cookie}; Path=/")
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()


class LocalPortal:
    """A running LocalPortalHandler server and the requests it has seen."""

    def __init__(self):
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), LocalPortalHandler)
        self.server.seen = []
        self.url = f"http://127.0.0.1:{self.server.server_address[1]}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def cookies_sent(self, path: str) -> list:
        """Cookie headers of every request to path, in order."""
        return [cookie for _, seen_path, cookie in self.server.seen if seen_path == path]


@pytest.fixture
def local_portal():
    portal = LocalPortal()
    portal.thread.start()
    yield portal
    portal.server.shutdown()
    portal.server.server_close()


@pytest.fixture
def portal_client(local_portal):
    """A client with a real requests.Session pointed at the local portal."""
    return MoodleClient(MoodleConfig(
        base_url=local_portal.url,
        output_dir=tempfile.mkdtemp(),
        request_timeout=5,
        base_delay_ms=0,
        max_retries=1
    ))

#!/usr/bin/env python3
"""
Moodle HTTP Client

Logs in to a Moodle portal with username and password, keeps the resulting
session cookies, and performs every authenticated request of a run: page
fetches (parsed with BeautifulSoup) and streamed file downloads.

Usage:
    from moodle_client import MoodleClient, MoodleConfig, RunContext

    client = MoodleClient(MoodleConfig())
    session = client.authenticate("s0123456", "secret")
    context = RunContext(session=session)

    doc = client.get_page(session, "https://moodle.htw-berlin.de/course/view.php?id=1")
"""

import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import requests
from bs4 import BeautifulSoup

log = logging.getLogger('moodle_downloader.client')

# Process exit codes for fatal errors
EXIT_AUTHENTICATION = 1
EXIT_LOGIN_CONNECTIVITY = 2
EXIT_COURSE_CONNECTIVITY = 3
EXIT_OUTPUT_DIR = 4

# Portal text the page classifier looks for
FILE_PAGE_MARKER = "Klicken Sie auf den Link '"
EXTERNAL_LINK_PREFIX = "extURL:"


# ============ ERRORS ============

class MoodleError(Exception):
    """Base class for all downloader errors."""
    pass


class AuthenticationError(MoodleError):
    """Credentials were rejected. Stops the run."""
    exit_code = EXIT_AUTHENTICATION


class ConnectivityError(MoodleError):
    """A request the whole run depends on could not be made. Stops the run."""

    def __init__(self, message: str, url: Optional[str] = None,
                 exit_code: int = EXIT_LOGIN_CONNECTIVITY):
        super().__init__(message)
        self.url = url
        self.exit_code = exit_code


class FetchError(MoodleError):
    """A single page could not be loaded."""

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class DownloadError(MoodleError):
    """A single resource could not be saved."""

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class WriteError(MoodleError):
    """A generated file could not be written."""

    def __init__(self, message: str, path: Path):
        super().__init__(message)
        self.path = path


# ============ BACKOFF STRATEGY ============

class BackoffStrategy:
    """Delay between requests and exponential backoff after transport errors."""

    def __init__(self, base_delay: float = 0.0, max_delay: float = 60.0, max_retries: int = 1):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max(1, max_retries)
        self.total_requests = 0
        self.total_errors = 0
        self.total_wait_time = 0.0

    def wait_between_requests(self):
        """Standard delay between requests (be a good citizen)."""
        if self.base_delay <= 0:
            return
        delay = self.base_delay + random.uniform(0, 0.5)
        self.total_wait_time += delay
        time.sleep(delay)

    def wait_after_error(self, attempt: int) -> float:
        """Exponential backoff after an error."""
        # Exponential: 2^attempt * base, with jitter
        delay = min(self.max_delay, (2 ** attempt) * self.base_delay)
        jitter = random.uniform(0, delay * 0.5)
        total_delay = delay + jitter

        log.warning(f"Backing off for {total_delay:.1f}s (attempt {attempt}/{self.max_retries})")
        self.total_wait_time += total_delay
        time.sleep(total_delay)
        return total_delay

    def record_success(self):
        self.total_requests += 1

    def record_error(self):
        self.total_requests += 1
        self.total_errors += 1

    def get_stats(self) -> dict:
        """Return statistics."""
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "total_wait_time_seconds": round(self.total_wait_time, 1),
        }


# ============ CONFIGURATION ============

@dataclass
class MoodleConfig:
    """Configuration for the Moodle downloader."""
    base_url: str = "https://moodle.htw-berlin.de"
    output_dir: str = ""
    request_timeout: float = 10.0
    base_delay_ms: int = 0
    max_retries: int = 1
    logged_in_marker: str = "Meine Kurse"
    file_page_marker: str = FILE_PAGE_MARKER
    external_links_filename: str = "Externe Links.html"
    external_link_prefix: str = EXTERNAL_LINK_PREFIX
    skip_unreachable_courses: bool = False
    user_agent: str = "Mozilla/5.0 (compatible; MoodleDownloader/1.0)"

    @property
    def login_url(self) -> str:
        return self.base_url.rstrip("/") + "/login/index.php"


# ============ SESSION AND RUN STATE ============

@dataclass(frozen=True)
class MoodleSession:
    """Cookies obtained at login, plus the page the login landed on.

    Never modified after login; every later request sends exactly these cookies.
    """
    cookies: dict[str, str]
    landing_page: str = ""

    def cookie_header(self) -> str:
        """Serialize cookies as a Cookie header, in mapping order."""
        return "".join(f"{name}={value}; " for name, value in self.cookies.items())


@dataclass
class FailureRecord:
    """A page or file that has to be fetched manually."""
    url: str
    reason: str = ""


@dataclass
class RunContext:
    """State threaded through one run: the session and what went wrong."""
    session: MoodleSession
    failures: list[FailureRecord] = field(default_factory=list)
    total_courses: int = 0
    completed_courses: int = 0
    downloaded_files: int = 0
    downloaded_bytes: int = 0
    start_time: float = field(default_factory=time.time)

    def record_failure(self, url: str, reason: str = ""):
        """Record a failure. The list only ever grows during a run."""
        self.failures.append(FailureRecord(url=url, reason=reason))
        log.error(f"FAILED: {url} ({reason}), skipping")

    @property
    def failed_urls(self) -> list[str]:
        return [failure.url for failure in self.failures]


# ============ MOODLE CLIENT ============

class MoodleClient:
    """Client for the Moodle web portal (HTML pages, not the web service API)."""

    def __init__(self, config: MoodleConfig):
        self.config = config
        self.session = requests.Session()
        self.session.headers["User-Agent"] = config.user_agent
        self.backoff = BackoffStrategy(
            base_delay=config.base_delay_ms / 1000,
            max_retries=config.max_retries
        )

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Make a request, retrying transport errors. HTTP errors are returned as-is.

        Requests made with explicit ``cookies`` leave nothing behind in the
        session's jar, so cookies the portal sets on one page are never sent
        with the next one.
        """
        kwargs.setdefault("timeout", self.config.request_timeout)
        explicit_cookies = "cookies" in kwargs
        last_error = None

        for attempt in range(1, self.backoff.max_retries + 1):
            try:
                self.backoff.wait_between_requests()

                log.debug(f"{method} {url}")
                response = self.session.request(method, url, **kwargs)

                self.backoff.record_success()
                return response

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                log.warning(f"Request failed (attempt {attempt}): {e}")
                self.backoff.record_error()
                last_error = e
                if attempt < self.backoff.max_retries:
                    self.backoff.wait_after_error(attempt)

            finally:
                if explicit_cookies:
                    self.session.cookies.clear()

        raise last_error

    # ---- Session Authenticator ----

    def authenticate(self, username: str, password: str) -> MoodleSession:
        """Log in and return the session.

        Raises:
            AuthenticationError: if the landing page lacks the logged-in marker
            ConnectivityError: if the login requests could not be made
        """
        login_url = self.config.login_url
        log.info(f"Logging in to {self.config.base_url} as {username}...")

        try:
            login_page = self._request("GET", login_url)
            form = {"username": username, "password": password}
            token = _find_login_token(login_page.text)
            if token:
                log.debug("Found login token on login page")
                form["logintoken"] = token

            response = self._request("POST", login_url, data=form, allow_redirects=True)
        except requests.exceptions.RequestException as e:
            raise ConnectivityError(
                f"Could not connect to {self.config.base_url}: {e}",
                url=login_url,
                exit_code=EXIT_LOGIN_CONNECTIVITY
            ) from e

        # Jar holds cookies from every login redirect; from here on only the session carries them
        cookies = dict(self.session.cookies.get_dict())
        self.session.cookies.clear()

        doc = BeautifulSoup(response.content, 'html.parser')
        body = str(doc.body) if doc.body else str(doc)
        if self.config.logged_in_marker not in body or not cookies:
            raise AuthenticationError("Login failed. Check username and password.")

        log.info(f"Login successful ({len(cookies)} cookies)")
        return MoodleSession(cookies=cookies, landing_page=response.text)

    # ---- Authenticated page fetch ----

    def get_page(self, session: MoodleSession, url: str) -> BeautifulSoup:
        """Fetch a page with the session cookies and parse it.

        Raises:
            FetchError: on transport errors or an HTTP error status
        """
        try:
            response = self._request("GET", url, cookies=session.cookies)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Could not load page: {e}", url) from e

        if response.status_code >= 400:
            raise FetchError(f"HTTP {response.status_code}", url)

        return BeautifulSoup(response.content, 'html.parser')

    # ---- Resource Fetcher ----

    def download_resource(self, session: MoodleSession, destination_dir: Path, resource) -> int:
        """Stream a resource to destination_dir/<file name>. Returns bytes written.

        The destination directory must already exist. Existing files are never
        overwritten. The body is written to a .part file and renamed on success.

        Raises:
            DownloadError: if the request fails or the file cannot be written
        """
        if not resource.downloadable:
            raise ValueError(f"{resource.kind.value} resources are not downloaded: {resource.display_name}")

        url = resource.source_location
        dest_path = destination_dir / resource.file_name
        part_path = dest_path.with_name(dest_path.name + ".part")

        if dest_path.exists():
            raise DownloadError(f"File already exists: {dest_path}", url)

        # requests drops the Cookie header on redirects; cookies= is re-sent on every hop
        try:
            response = self._request(
                "GET", url,
                headers={"Cookie": session.cookie_header()},
                cookies=session.cookies,
                stream=True
            )
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Could not open connection: {e}", url) from e

        try:
            if response.status_code >= 400:
                raise DownloadError(f"HTTP {response.status_code}", url)

            written = 0
            with open(part_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=65536):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)

            part_path.rename(dest_path)

        except (OSError, requests.exceptions.RequestException) as e:
            # Clean up partial file
            if part_path.exists():
                part_path.unlink()
            raise DownloadError(f"Could not save {dest_path.name}: {e}", url) from e

        finally:
            response.close()

        return written


def _find_login_token(html: str) -> Optional[str]:
    """Return the hidden logintoken of a Moodle login form, if any."""
    soup = BeautifulSoup(html, 'html.parser')
    token_input = soup.find('input', attrs={'name': 'logintoken'})
    if token_input and token_input.get('value'):
        return token_input['value']
    return None

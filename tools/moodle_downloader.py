#!/usr/bin/env python3
"""
Moodle Course Downloader

Downloads all files of all enrolled courses from a Moodle portal
(moodle.htw-berlin.de by default): plain files, folder contents and
Moodle pages. External links are collected into one HTML file per course.

Each course gets its own directory below the output directory. Files that
could not be downloaded are listed at the end of the run.

Exit codes:
    0  success
    1  login failed (wrong username or password)
    2  no connection during login
    3  connection lost while loading a course page
    4  output directory cannot be created

Usage:
    python moodle_downloader.py                          # Prompt for everything
    python moodle_downloader.py --username s0123456 --output ~/moodle
    python moodle_downloader.py --test                   # Login and list courses only
    python moodle_downloader.py --log download.log -v    # Log to file
"""

import argparse
import getpass
import html
import logging
import os
import sys
import time
from pathlib import Path
from typing import NoReturn, Optional

from bs4 import BeautifulSoup

from moodle_client import (
    EXIT_OUTPUT_DIR,
    AuthenticationError,
    ConnectivityError,
    DownloadError,
    MoodleClient,
    MoodleConfig,
    RunContext,
    WriteError,
)
from moodle_pages import (
    Course,
    Resource,
    ResourceKind,
    classify_course_resources,
    list_courses,
    sanitize_name,
)

# ============ LOGGING SETUP ============

class ColorFormatter(logging.Formatter):
    """Colored output for terminal."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[41m',  # Red background
    }
    RESET = '\033[0m'

    def format(self, record):
        # Color a copy; the record is shared with the file handler
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, '')
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Configure logging to stdout and optionally to file."""
    logger = logging.getLogger('moodle_downloader')
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    # Console handler with colors
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_fmt = ColorFormatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S')
    console.setFormatter(console_fmt)
    logger.addHandler(console)

    # File handler (no colors)
    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_fmt = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
        file_handler.setFormatter(file_fmt)
        logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")

    return logger


# Global logger
log = logging.getLogger('moodle_downloader')


# ============ FATAL ERROR HANDLING ============

EXIT_INTERRUPTED = 130


def fatal(message: str, exit_code: int = 1) -> NoReturn:
    """Log fatal error and exit immediately."""
    log.critical("")
    log.critical("=" * 60)
    log.critical("FATAL ERROR - STOPPING IMMEDIATELY")
    log.critical("=" * 60)
    log.critical(message)
    log.critical("=" * 60)
    log.critical("")
    sys.exit(exit_code)


# ============ UTILITY FUNCTIONS ============

def format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.2f} TB"


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds/60:.0f}m {seconds%60:.0f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def course_dir_name(course_name: str) -> str:
    """Directory name for a course: spaces become hyphens."""
    return sanitize_name(course_name.replace(" ", "-"))


# ============ CONFIGURATION ============

DEFAULT_CONFIG = {
    "base_url": "https://moodle.htw-berlin.de",
    "request_timeout": 10,
    "base_delay_ms": 0,
    "max_retries": 1,
}


def prompt_credentials(username: Optional[str] = None,
                       password: Optional[str] = None,
                       output_dir: Optional[str] = None,
                       ask_output: bool = True) -> tuple[str, str, str]:
    """Ask for whatever was not given on the command line or in the environment."""
    if not (username and password and (output_dir or not ask_output)):
        print("Moodle Downloader")
        print("-----------------\n")

    if not username:
        username = input("Username: ").strip()

    if not password:
        if sys.stdin.isatty():
            password = getpass.getpass("Password: ")
        else:
            # Fallback for consoles without a terminal (password is visible!)
            password = input("Password (visible): ")

    if not output_dir and ask_output:
        output_dir = input("Download directory: ").strip()

    return username, password, output_dir


# ============ EXTERNAL LINKS ============

def external_links_html(resources: list[Resource]) -> str:
    """One anchor line per external link, in discovery order."""
    lines = []
    for resource in resources:
        url = html.escape(resource.source_location)
        lines.append(f'<a href="{url}">{url}</a><br />\n')
    return "".join(lines)


def write_external_links(course_dir: Path, resources: list[Resource], filename: str) -> Optional[Path]:
    """Write the external links file of a course. Returns its path, or None if there are no links.

    Raises:
        WriteError: if the file exists or cannot be written
    """
    if not resources:
        return None

    target = course_dir / filename
    try:
        with open(target, "x", encoding="utf-8") as f:
            f.write(external_links_html(resources))
    except OSError as e:
        raise WriteError(f"Could not write {target}: {e}", target) from e

    return target


# ============ MAIN OPERATIONS ============

def download_course(client: MoodleClient, context: RunContext, course: Course, output_dir: Path) -> int:
    """Download all resources of a course. Returns the number of files saved."""
    log.info("")
    log.info(f"Course: {course.name}")
    log.info("-" * (8 + len(course.name)))

    resources = classify_course_resources(client, context, course.url)

    if not resources:
        log.info("This course is empty")
        return 0

    course_dir = output_dir / course_dir_name(course.name)
    try:
        course_dir.mkdir(exist_ok=True)
    except OSError as e:
        context.record_failure(course.url, f"Could not create {course_dir}: {e}")
        return 0

    saved = 0
    external_links = []

    for resource in resources.values():
        if resource.kind is ResourceKind.EXTERNAL_LINK:
            external_links.append(resource)
            continue

        log.info(f"  Downloading: {resource.display_name}")
        try:
            size = client.download_resource(context.session, course_dir, resource)
        except DownloadError as e:
            context.record_failure(resource.source_location, str(e))
            continue

        saved += 1
        context.downloaded_files += 1
        context.downloaded_bytes += size
        log.debug(f"    OK: {format_size(size)}")

    if external_links:
        log.info(f"  Saving {len(external_links)} external links")
        try:
            write_external_links(course_dir, external_links, client.config.external_links_filename)
        except WriteError as e:
            log.error(f"  External links file could not be saved: {e}")

    return saved


def log_summary(context: RunContext):
    """Log final summary, including everything that has to be fetched manually."""
    elapsed = time.time() - context.start_time

    log.info("")
    log.info("=" * 60)
    log.info("DOWNLOADS COMPLETE")
    log.info("=" * 60)
    log.info(f"  Courses:    {context.completed_courses}/{context.total_courses}")
    log.info(f"  Downloaded: {context.downloaded_files} files ({format_size(context.downloaded_bytes)})")
    log.info(f"  Failed:     {len(context.failures)}")
    log.info(f"  Duration:   {format_duration(elapsed)}")

    if context.failures:
        log.warning("")
        log.warning("The following files could not be downloaded. Please download them manually:")
        for failure in context.failures:
            log.warning(f"-> {failure.url}")

    log.info("=" * 60)


def run(client: MoodleClient, username: str, password: str, output_dir: Path) -> RunContext:
    """Log in, then download every course into output_dir.

    Raises:
        AuthenticationError, ConnectivityError: the run cannot continue
        WriteError: the output directory cannot be created
    """
    session = client.authenticate(username, password)
    context = RunContext(session=session)

    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteError(f"Could not create output directory {output_dir}: {e}", output_dir) from e

    landing = BeautifulSoup(session.landing_page, 'html.parser')
    courses = list_courses(landing, client.config.base_url)
    context.total_courses = len(courses)
    log.info(f"Found {len(courses)} courses")

    for course in courses:
        try:
            download_course(client, context, course, output_dir)
        except ConnectivityError as e:
            if not client.config.skip_unreachable_courses:
                raise
            context.record_failure(course.url, str(e))
            continue
        context.completed_courses += 1

    log_summary(context)
    return context


def list_only(client: MoodleClient, username: str, password: str):
    """Log in and list the courses found, without downloading anything."""
    session = client.authenticate(username, password)
    landing = BeautifulSoup(session.landing_page, 'html.parser')
    courses = list_courses(landing, client.config.base_url)

    log.info("")
    log.info("CONNECTION SUCCESSFUL!")
    log.info(f"  Courses: {len(courses)}")
    for course in courses:
        log.info(f"    - {course.name} ({course.url})")


# ============ CLI ============

def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="Download all course files from Moodle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python moodle_downloader.py
    python moodle_downloader.py --username s0123456 --output ~/moodle
    python moodle_downloader.py --test
    python moodle_downloader.py --log download.log -v

Username and password are also read from MOODLE_USERNAME and MOODLE_PASSWORD.
"""
    )

    parser.add_argument("--username", type=str, help="Moodle username")
    parser.add_argument("--output", type=str, help="Download directory")
    parser.add_argument("--base-url", type=str, default=DEFAULT_CONFIG["base_url"], help="Moodle URL")
    parser.add_argument("--timeout", type=float, default=DEFAULT_CONFIG["request_timeout"], help="Request timeout (s)")
    parser.add_argument("--rate-limit", type=int, default=DEFAULT_CONFIG["base_delay_ms"], help="Delay between requests (ms)")
    parser.add_argument("--retries", type=int, default=DEFAULT_CONFIG["max_retries"], help="Attempts per request")
    parser.add_argument("--skip-unreachable-courses", action="store_true",
                        help="Record unreachable course pages instead of stopping")
    parser.add_argument("--test", action="store_true", help="Login and list courses only")
    parser.add_argument("--log", type=str, help="Log file path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    # Setup logging first
    log_file = Path(args.log) if args.log else None
    setup_logging(log_file, args.verbose)

    username = args.username or os.environ.get("MOODLE_USERNAME")
    password = os.environ.get("MOODLE_PASSWORD")

    try:
        username, password, output = prompt_credentials(
            username, password, args.output, ask_output=not args.test
        )
    except (KeyboardInterrupt, EOFError):
        print()
        sys.exit(EXIT_INTERRUPTED)

    config = MoodleConfig(
        base_url=args.base_url,
        output_dir=output,
        request_timeout=args.timeout,
        base_delay_ms=args.rate_limit,
        max_retries=args.retries,
        skip_unreachable_courses=args.skip_unreachable_courses
    )

    client = MoodleClient(config)

    try:
        if args.test:
            list_only(client, username, password)
        else:
            run(client, username, password, Path(config.output_dir).expanduser())
    except (AuthenticationError, ConnectivityError) as e:
        fatal(str(e), e.exit_code)
    except WriteError as e:
        fatal(str(e), EXIT_OUTPUT_DIR)

    stats = client.backoff.get_stats()
    log.info(f"HTTP Stats: {stats['total_requests']} requests, {stats['total_wait_time_seconds']}s total delay")


if __name__ == "__main__":
    main()

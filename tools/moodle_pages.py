#!/usr/bin/env python3
"""
Moodle Page Parsing

Turns Moodle HTML pages into typed records: the course list on the
landing page, and the resources behind the activities of a course page.

Activity pages are classified by an ordered table of rules. The first rule
that matches an activity decides what it becomes:

    file      page text contains the file page marker  -> PlainFile
    folder    URL path contains /folder/               -> FolderEntry (one per file)
    url       URL path contains /url/                  -> ExternalLink
    page      URL path contains /page/                 -> RenderedPage

Activities no rule matches are skipped.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from moodle_client import (
    EXIT_COURSE_CONNECTIVITY,
    EXTERNAL_LINK_PREFIX,
    FILE_PAGE_MARKER,
    ConnectivityError,
    FetchError,
    MoodleClient,
    RunContext,
)

log = logging.getLogger('moodle_downloader.pages')


# ============ DATA CLASSES ============

@dataclass
class Course:
    name: str
    url: str


class ResourceKind(Enum):
    PLAIN_FILE = "file"
    FOLDER_ENTRY = "folder"
    EXTERNAL_LINK = "url"
    RENDERED_PAGE = "page"


@dataclass
class Resource:
    display_name: str
    source_location: str
    kind: ResourceKind

    @property
    def downloadable(self) -> bool:
        return self.kind is not ResourceKind.EXTERNAL_LINK

    @property
    def file_name(self) -> str:
        """Display name made safe to use as a file name."""
        return sanitize_name(self.display_name)


# ============ UTILITY FUNCTIONS ============

def sanitize_name(name: str) -> str:
    """Make a server-provided name safe as a single path component."""
    sanitized = re.sub(r'[<>:"/\\|?*\x00-\x1f]', '_', name).strip()
    if sanitized in ("", ".", ".."):
        return "unnamed"
    return sanitized


def link_text(link) -> str:
    """Text of a link with whitespace collapsed."""
    return " ".join(link.get_text().split())


def strip_force_download(url: str) -> str:
    """Remove forcedownload query parameters, leaving the rest of the URL untouched."""
    base, sep, query = url.partition("?")
    if not sep:
        return url

    query, hash_sep, fragment = query.partition("#")
    params = [p for p in query.split("&") if p and p.split("=", 1)[0] != "forcedownload"]

    result = base
    if params:
        result += "?" + "&".join(params)
    if hash_sep:
        result += "#" + fragment
    return result


def page_file_name(doc: BeautifulSoup) -> str:
    """File name for a saved Moodle page, derived from its <title>."""
    title = doc.title.get_text().strip() if doc.title else ""
    name = title.replace(" ", "-").replace(":", "").replace(".", "")
    return (name or "page") + ".html"


def url_path_contains(url: str, marker: str) -> bool:
    return marker in urlparse(url).path


# ============ COURSE ENUMERATOR ============

def list_courses(doc: BeautifulSoup, base_url: str = "") -> list[Course]:
    """Extract the courses on the landing page, in page order.

    Only links inside course cards (div.coc-course) whose target contains
    /course/ count. Courses with the same title collapse into one entry.
    """
    courses: dict[str, str] = {}

    for link in doc.select("div.coc-course a"):
        href = link.get("href", "")
        if "/course/" not in href:
            continue

        title = (link.get("title") or "").strip() or link_text(link)
        if not title:
            log.debug(f"Skipping course link without a title: {href}")
            continue

        courses[title] = urljoin(base_url, href)

    return [Course(name=name, url=url) for name, url in courses.items()]


# ============ RESOURCE CLASSIFIER ============

@dataclass
class ClassificationRule:
    """Decides whether an activity page is of one kind, and extracts its resources."""
    name: str
    matches: Callable[[str, BeautifulSoup], bool]
    build: Callable[[str, BeautifulSoup], list[Resource]]


def _file_resources(page_url: str, doc: BeautifulSoup) -> list[Resource]:
    return [
        Resource(
            display_name=link_text(link),
            source_location=urljoin(page_url, link.get("href", "")),
            kind=ResourceKind.PLAIN_FILE
        )
        for link in doc.select("div.resourceworkaround a")
    ]


def _folder_resources(page_url: str, doc: BeautifulSoup) -> list[Resource]:
    return [
        Resource(
            display_name=link_text(link),
            source_location=strip_force_download(urljoin(page_url, link.get("href", ""))),
            kind=ResourceKind.FOLDER_ENTRY
        )
        for link in doc.select("span.fp-filename-icon a")
    ]


def _external_link_resources(page_url: str, doc: BeautifulSoup,
                             prefix: str = EXTERNAL_LINK_PREFIX) -> list[Resource]:
    return [
        Resource(
            display_name=prefix + link_text(link),
            source_location=urljoin(page_url, link.get("href", "")),
            kind=ResourceKind.EXTERNAL_LINK
        )
        for link in doc.select("div.urlworkaround a")
    ]


def _page_resources(page_url: str, doc: BeautifulSoup) -> list[Resource]:
    return [Resource(
        display_name=page_file_name(doc),
        source_location=page_url,
        kind=ResourceKind.RENDERED_PAGE
    )]


def _body_contains(doc: BeautifulSoup, text: str) -> bool:
    body = doc.body if doc.body else doc
    return text in str(body)


def default_rules(file_page_marker: str = FILE_PAGE_MARKER,
                  external_link_prefix: str = EXTERNAL_LINK_PREFIX) -> list[ClassificationRule]:
    """The classification rules, highest priority first."""
    return [
        ClassificationRule(
            name="file",
            matches=lambda url, doc: _body_contains(doc, file_page_marker),
            build=_file_resources
        ),
        ClassificationRule(
            name="folder",
            matches=lambda url, doc: url_path_contains(url, "/folder/"),
            build=_folder_resources
        ),
        ClassificationRule(
            name="url",
            matches=lambda url, doc: url_path_contains(url, "/url/"),
            build=lambda url, doc: _external_link_resources(url, doc, external_link_prefix)
        ),
        ClassificationRule(
            name="page",
            matches=lambda url, doc: url_path_contains(url, "/page/"),
            build=_page_resources
        ),
    ]


def classify_page(page_url: str, doc: BeautifulSoup,
                  rules: list[ClassificationRule]) -> list[Resource]:
    """Resources behind one activity page; empty if no rule matches."""
    for rule in rules:
        if rule.matches(page_url, doc):
            resources = rule.build(page_url, doc)
            log.debug(f"{page_url}: {rule.name} ({len(resources)} resources)")
            return resources
    log.debug(f"{page_url}: no matching rule, skipped")
    return []


def activity_urls(doc: BeautifulSoup, page_url: str = "") -> list[str]:
    """Links inside activity instances of a course page, in document order."""
    return [
        urljoin(page_url, link["href"])
        for link in doc.select("div.activityinstance a")
        if link.get("href")
    ]


def classify_course_resources(client: MoodleClient, context: RunContext,
                              course_url: str) -> dict[str, Resource]:
    """Visit every activity of a course and collect its resources by display name.

    An activity page that fails to load is recorded in the context and skipped.
    A later resource with the same display name replaces an earlier one.

    Raises:
        ConnectivityError: if the course page itself cannot be loaded
    """
    config = client.config
    try:
        course_doc = client.get_page(context.session, course_url)
    except FetchError as e:
        raise ConnectivityError(
            f"Connection lost while loading course page: {e}",
            url=course_url,
            exit_code=EXIT_COURSE_CONNECTIVITY
        ) from e

    rules = default_rules(config.file_page_marker, config.external_link_prefix)
    resources: dict[str, Resource] = {}

    for page_url in activity_urls(course_doc, course_url):
        try:
            page_doc = client.get_page(context.session, page_url)
        except FetchError as e:
            context.record_failure(page_url, str(e))
            continue

        for resource in classify_page(page_url, page_doc, rules):
            if resource.kind is ResourceKind.EXTERNAL_LINK:
                log.info(f"External link found: {resource.source_location}")
            else:
                log.info(f"Found: {resource.display_name}")
            resources[resource.display_name] = resource

    return resources

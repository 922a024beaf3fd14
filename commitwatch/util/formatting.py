"""Telegram message formatting for commit notifications.

Everything here is pure: no I/O and no state. Any text that comes from a
commit (title, body, author) or a repository name goes through escape_html
before it is embedded in Telegram's HTML markup.
"""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from commitwatch.models.github import GitHubCommit
from commitwatch.util.clock import utcnow

COMMITS_PER_MESSAGE = 5
SUMMARY_LIMIT = 5
BODY_EXCERPT_LENGTH = 200
TITLE_LENGTH = 256
AUTHOR_LENGTH = 100
# Telegram rejects longer messages
MAX_MESSAGE_LENGTH = 4096
SEPARATOR = "━━━━━━━━━━━━━━━━"


def escape_html(text: str) -> str:
    """Escape HTML special characters for Telegram"""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def format_repo_display(repo_string: str) -> str:
    """Format a repository string for display: "owner/repo:branch" => "owner/repo (branch)" """
    repo, sep, branch = repo_string.partition(":")
    return f"{repo} ({branch})" if sep else repo_string


def repo_url(repo_string: str) -> str:
    return f"https://github.com/{repo_string.partition(':')[0]}"


def format_timestamp(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "Unknown date"


def _link(url: Optional[str], label: str) -> str:
    return f'<a href="{escape_html(url or "#")}">{label}</a>'


def _pluralize(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _title(commit: GitHubCommit) -> str:
    return escape_html(_truncate(commit.title, TITLE_LENGTH))


def _author(commit: GitHubCommit) -> str:
    return escape_html(_truncate(commit.author_name or "Unknown", AUTHOR_LENGTH))


def format_detailed_commit(commit: GitHubCommit, repo_string: str, sent_at: Optional[datetime] = None) -> str:
    """Detailed notification for a single commit"""
    lines = [
        f"📦 <b>{escape_html(format_repo_display(repo_string))}</b>",
        SEPARATOR,
        "",
        f"<b>{_title(commit)}</b>",
    ]

    body = commit.body
    if body:
        lines += ["", escape_html(_truncate(body, BODY_EXCERPT_LENGTH))]

    lines += [
        "",
        SEPARATOR,
        f"👤 {_author(commit)}",
        f"🕐 {format_timestamp(commit.authored_at)}",
        "",
        _link(commit.html_url, f"🔗 {commit.short_sha}"),
        "",
        f"<i>Sent {format_timestamp(sent_at or utcnow())}</i>",
    ]
    return "\n".join(lines)


def format_multiple_commits(
    commits: Sequence[GitHubCommit], repo_string: str, sent_at: Optional[datetime] = None
) -> str:
    """One summary message listing the first few commits and how many were left out"""
    count = len(commits)
    lines = [
        f"📢 <b>{_pluralize(count, 'new commit')}</b> in "
        f"{_link(repo_url(repo_string), escape_html(format_repo_display(repo_string)))}",
        "",
    ]

    for index, commit in enumerate(commits[:SUMMARY_LIMIT], start=1):
        lines.append(f"{index}. <b>{_title(commit)}</b>")
        lines.append(f"   by {_author(commit)} • {_link(commit.html_url, commit.short_sha)}")
        lines.append("")

    if count > SUMMARY_LIMIT:
        lines.append(f"... and {_pluralize(count - SUMMARY_LIMIT, 'more commit')}")
        lines.append("")

    lines.append(f"<i>Sent {format_timestamp(sent_at or utcnow())}</i>")
    return "\n".join(lines)


def _format_page(
    page: Sequence[GitHubCommit], offset: int, total: int, repo_string: str, sent_at: datetime
) -> str:
    lines = [
        f"📢 <b>{_pluralize(total, 'new commit')}</b> in "
        f"{_link(repo_url(repo_string), escape_html(format_repo_display(repo_string)))}",
        f"📋 Showing {offset + 1}-{offset + len(page)}/{total}",
        "",
    ]

    # Numbering continues across pages
    for number, commit in enumerate(page, start=offset + 1):
        lines.append(f"<b>{number}.</b> {_title(commit)}")
        lines.append(f"   👤 {_author(commit)} • {_link(commit.html_url, commit.short_sha)}")
        lines.append("")

    lines.append(f"<i>🕐 {format_timestamp(sent_at)}</i>")
    return "\n".join(lines)


def format_multiple_commits_chunked(
    commits: Sequence[GitHubCommit],
    repo_string: str,
    page_size: int = COMMITS_PER_MESSAGE,
    sent_at: Optional[datetime] = None,
) -> List[str]:
    """Split commits over messages of at most page_size commits and MAX_MESSAGE_LENGTH characters"""
    return [text for _, text in _paged(commits, repo_string, page_size, sent_at or utcnow())]


def _paged(commits, repo_string, page_size, sent_at) -> List[Tuple[List[GitHubCommit], str]]:
    if page_size < 1:
        raise ValueError("page_size must be at least 1")

    total = len(commits)
    pages = []
    start = 0
    while start < total:
        end = min(start + page_size, total)
        text = _format_page(commits[start:end], start, total, repo_string, sent_at)
        # Drop commits off the end until the page fits; a page always keeps at least one
        while len(text) > MAX_MESSAGE_LENGTH and end - start > 1:
            end -= 1
            text = _format_page(commits[start:end], start, total, repo_string, sent_at)
        pages.append((list(commits[start:end]), text))
        start = end
    return pages


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split text into parts of at most limit characters, breaking only between lines.

    Markup never spans a line break in the messages built here, so every part
    stays well-formed. A single line longer than limit is cut as a last resort.
    """
    if len(text) <= limit:
        return [text]

    parts = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                parts.append(current)
                current = ""
            parts.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            parts.append(current)
            current = line
        else:
            current = candidate
    if current:
        parts.append(current)
    return parts


def build_notifications(
    commits: Sequence[GitHubCommit],
    repo_string: str,
    page_size: int = COMMITS_PER_MESSAGE,
    sent_at: Optional[datetime] = None,
) -> List[Tuple[List[GitHubCommit], str]]:
    """Messages to send for a batch of new commits, each paired with the commits it covers.

    A single commit gets the detailed format; several commits are paged.
    """
    if not commits:
        return []

    sent_at = sent_at or utcnow()
    if len(commits) == 1:
        return [([commits[0]], format_detailed_commit(commits[0], repo_string, sent_at))]
    return _paged(commits, repo_string, page_size, sent_at)


def format_error(error: Exception, context: str) -> str:
    return f"❌ <b>Error</b> in {escape_html(context)}\n\n<code>{escape_html(str(error))}</code>"


def format_success_summary(total_commits: int, repo_count: int) -> str:
    repos = f"{repo_count} {'repository' if repo_count == 1 else 'repositories'}"
    if total_commits == 0:
        return f"✅ <b>Tracking complete</b>\n\nNo new commits from {repos}."
    return f"✅ <b>Tracking complete</b>\n\nAnnounced {_pluralize(total_commits, 'new commit')} from {repos}."

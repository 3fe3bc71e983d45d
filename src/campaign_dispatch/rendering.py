# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient message personalization, tracking and unsubscribe links.

Campaign content is opaque HTML. Rendering substitutes ``{{placeholder}}``
from the recipient's snapshot merge fields and, when configured, rewrites
absolute http(s) links through a signed click redirect, appends a signed
open pixel and appends a signed unsubscribe link, in that order.

Every link is signed with HMAC-SHA256 over a pipe-joined value:
``unsub|cid|rid``, ``open|cid|rid`` and ``click|cid|rid|url``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import html
import re
from typing import Any
from urllib.parse import urlencode, urlparse

from .transport import RenderedMessage

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
LINK_RE = re.compile(r"(<a\b[^>]*\bhref\s*=\s*)([\"'])(.*?)\2", re.IGNORECASE | re.DOTALL)
SKIPPED_HREF_PREFIXES = ("mailto:", "tel:", "#", "javascript:")


def sign_value(secret: str, value: str) -> str:
    """URL-safe, unpadded base64 of HMAC-SHA256(secret, value)."""
    digest = hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_value(secret: str | None, value: str, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_value(secret, value).encode("ascii"), signature.encode("utf-8"))


def sign_unsubscribe(secret: str, campaign_id: str, recipient_id: str) -> str:
    """Signature of one recipient's unsubscribe link."""
    return sign_value(secret, f"unsub|{campaign_id}|{recipient_id}")


def sign_open(secret: str, campaign_id: str, recipient_id: str) -> str:
    return sign_value(secret, f"open|{campaign_id}|{recipient_id}")


def sign_click(secret: str, campaign_id: str, recipient_id: str, url: str) -> str:
    return sign_value(secret, f"click|{campaign_id}|{recipient_id}|{url}")


def verify_unsubscribe_signature(
    secret: str | None, campaign_id: str, recipient_id: str, signature: str | None
) -> bool:
    return verify_value(secret, f"unsub|{campaign_id}|{recipient_id}", signature)


def verify_open_signature(
    secret: str | None, campaign_id: str, recipient_id: str, signature: str | None
) -> bool:
    return verify_value(secret, f"open|{campaign_id}|{recipient_id}", signature)


def verify_click_signature(
    secret: str | None, campaign_id: str, recipient_id: str, url: str, signature: str | None
) -> bool:
    return verify_value(secret, f"click|{campaign_id}|{recipient_id}|{url}", signature)


def _with_query(base_url: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode(params)}"


def build_unsubscribe_url(
    base_url: str | None, secret: str | None, campaign_id: str, recipient_id: str
) -> str | None:
    """Signed link, or None unless both the base URL and the secret are set."""
    if not base_url or not secret:
        return None
    return _with_query(
        base_url,
        {
            "cid": campaign_id,
            "rid": recipient_id,
            "sig": sign_unsubscribe(secret, campaign_id, recipient_id),
        },
    )


def build_open_pixel_url(
    base_url: str | None, secret: str | None, campaign_id: str, recipient_id: str
) -> str | None:
    """``{base_url}/track/open`` with a signed query, or None when tracking is off."""
    if not base_url or not secret:
        return None
    return _with_query(
        f"{base_url.rstrip('/')}/track/open",
        {"cid": campaign_id, "rid": recipient_id, "sig": sign_open(secret, campaign_id, recipient_id)},
    )


def build_click_url(
    base_url: str | None, secret: str | None, campaign_id: str, recipient_id: str, url: str
) -> str | None:
    """``{base_url}/track/click`` redirecting to ``url``, or None when tracking is off."""
    if not base_url or not secret:
        return None
    return _with_query(
        f"{base_url.rstrip('/')}/track/click",
        {
            "cid": campaign_id,
            "rid": recipient_id,
            "u": url,
            "sig": sign_click(secret, campaign_id, recipient_id, url),
        },
    )


def is_trackable_url(url: str) -> bool:
    """Only absolute http(s) URLs with a host are rewritten or redirected to."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def substitute(text: str, fields: dict[str, Any]) -> str:
    """Replace known ``{{name}}`` placeholders; unknown ones are left as written."""

    def repl(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in fields:
            return match.group(0)
        value = fields[name]
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(repl, text or "")


def rewrite_links(content: str, base_url: str, secret: str, campaign_id: str, recipient_id: str) -> str:
    """Point every absolute http(s) ``<a href>`` at the signed click redirect.

    mailto:, tel:, fragment and javascript: links are left alone, as is
    anything that is not an absolute http(s) URL.
    """

    def repl(match: re.Match[str]) -> str:
        prefix, quote, raw = match.groups()
        href = html.unescape(raw).strip()
        if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES) or not is_trackable_url(href):
            return match.group(0)
        tracked = build_click_url(base_url, secret, campaign_id, recipient_id, href)
        return f"{prefix}{quote}{html.escape(tracked, quote=True)}{quote}"

    return LINK_RE.sub(repl, content)


def _insert_before_body_end(content: str, fragment: str) -> str:
    idx = content.lower().rfind("</body>")
    if idx >= 0:
        return content[:idx] + fragment + content[idx:]
    return content + fragment


def inject_open_pixel(content: str, url: str) -> str:
    pixel = (
        f'<img src="{html.escape(url)}" width="1" height="1" '
        'style="display:none!important" alt="" />'
    )
    return _insert_before_body_end(content, pixel)


def append_unsubscribe_footer(content: str, url: str) -> str:
    footer = (
        '<div style="margin-top:16px;font-size:12px;color:#666">'
        f'To stop receiving these emails, <a href="{html.escape(url)}">unsubscribe here</a>.'
        "</div>"
    )
    return _insert_before_body_end(content, footer)


def render_message(
    campaign: dict[str, Any],
    recipient: dict[str, Any],
    unsubscribe_base_url: str | None = None,
    unsubscribe_secret: str | None = None,
    tracking_base_url: str | None = None,
) -> RenderedMessage:
    """Build the message one recipient receives from the campaign and its snapshot row.

    ``unsubscribe_secret`` signs the unsubscribe link and, when
    ``tracking_base_url`` is set, the open pixel and click redirects.
    """
    fields = dict(recipient.get("merge_fields") or {})
    fields.setdefault("email", recipient.get("email"))
    body = substitute(campaign.get("content") or "", fields)
    headers: dict[str, str] = {}

    if tracking_base_url and unsubscribe_secret:
        body = rewrite_links(
            body, tracking_base_url, unsubscribe_secret, campaign["id"], recipient["id"]
        )
        pixel = build_open_pixel_url(
            tracking_base_url, unsubscribe_secret, campaign["id"], recipient["id"]
        )
        body = inject_open_pixel(body, pixel)

    url = build_unsubscribe_url(
        unsubscribe_base_url, unsubscribe_secret, campaign["id"], recipient["id"]
    )
    if url:
        body = append_unsubscribe_footer(body, url)
        headers["List-Unsubscribe"] = f"<{url}>"

    return RenderedMessage(
        subject=substitute(campaign.get("subject") or "", fields),
        html=body,
        from_address=campaign.get("from_email"),
        from_name=campaign.get("from_name"),
        reply_to=campaign.get("reply_to"),
        headers=headers,
    )


__all__ = [
    "build_click_url",
    "build_open_pixel_url",
    "build_unsubscribe_url",
    "inject_open_pixel",
    "is_trackable_url",
    "render_message",
    "rewrite_links",
    "sign_click",
    "sign_open",
    "sign_unsubscribe",
    "sign_value",
    "substitute",
    "verify_click_signature",
    "verify_open_signature",
    "verify_unsubscribe_signature",
    "verify_value",
]

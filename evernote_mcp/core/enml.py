"""ENML (Evernote Markup Language) to plain text and HTML.

Both converters are single-pass regex substitutions over the whole document.
They assume the markup came from Evernote; unbalanced tags are not rejected,
they just convert partially. Feeding converted output back in is not a
supported input.
"""

import re
from html import escape

_I = re.IGNORECASE
_IS = re.IGNORECASE | re.DOTALL

_PROLOG = [
    (re.compile(r"<!DOCTYPE[^>]*>", _I), ""),
    (re.compile(r"<\?xml[^>]*\?>", _I), ""),
]

_CRYPT = re.compile(r"<en-crypt\b[^>]*>.*?</en-crypt>", _IS)
_TODO_CHECKED = re.compile(r"""<en-todo\b[^>]*\bchecked=["']true["'][^>]*>""", _I)
_TODO = re.compile(r"<en-todo\b[^>]*>", _I)
_TODO_CLOSE = re.compile(r"</en-todo\s*>", _I)
_MEDIA_CLOSE = re.compile(r"</en-media\s*>", _I)
_MEDIA = re.compile(r"<en-media\b([^>]*?)\s*/?>", _I)
_ATTR = re.compile(r"""([\w:-]+)\s*=\s*(["'])(.*?)\2""", re.DOTALL)

_PLAIN_TEXT_RULES = [
    (re.compile(r"</?en-note\b[^>]*>", _I), ""),
    (re.compile(r"""<en-media\b[^>]*\balt=["']([^"']*)["'][^>]*>""", _I), r"\1"),
    (re.compile(r"<en-media\b[^>]*>", _I), "[Media]"),
    (_CRYPT, "[Encrypted Content]"),
    (_TODO_CHECKED, "☑ "),
    (_TODO, "☐ "),
    (re.compile(r"<br\s*/?>", _I), "\n"),
    (re.compile(r"</p\s*>", _I), "\n\n"),
    (re.compile(r"<p(\s[^>]*)?>", _I), ""),
    (re.compile(r"</div\s*>", _I), "\n"),
    (re.compile(r"<div\b[^>]*>", _I), ""),
    (re.compile(r"</h[1-6]\s*>", _I), "\n\n"),
    (re.compile(r"<h[1-6]\b[^>]*>", _I), ""),
    (re.compile(r"</li\s*>", _I), "\n"),
    (re.compile(r"<li\b[^>]*>", _I), "• "),
    (re.compile(r"</?[uo]l\b[^>]*>", _I), "\n"),
    (re.compile(r"</t[dh]\s*>", _I), "\t"),
    (re.compile(r"</tr\s*>", _I), "\n"),
    (re.compile(r"<t[dhr]\b[^>]*>", _I), ""),
    (re.compile(r"</?table\b[^>]*>", _I), "\n"),
    # Anything left over
    (re.compile(r"<[^>]*>"), ""),
]

# &amp; goes last so "&amp;lt;" decodes to "&lt;", not "<"
_ENTITIES = [
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&apos;", "'"),
    ("&amp;", "&"),
]


def _strip_prolog(markup: str) -> str:
    for pattern, replacement in _PROLOG:
        markup = pattern.sub(replacement, markup)
    return markup


def decode_entities(text: str) -> str:
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return text


def enml_to_plain_text(enml: str) -> str:
    """Render an ENML document as readable plain text."""
    if not enml:
        return ""

    text = _strip_prolog(enml)
    for pattern, replacement in _PLAIN_TEXT_RULES:
        text = pattern.sub(replacement, text)

    text = decode_entities(text)

    text = re.sub(r"\n\s*\n\s*\n", "\n\n", text)
    text = text.strip()
    text = re.sub(r"[ \t]+", " ", text)
    return text


def _media_to_html(match: "re.Match") -> str:
    attrs = {name.lower(): value for name, _, value in _ATTR.findall(match.group(1))}
    if not attrs.get("type", "").lower().startswith("image"):
        return '<div class="media-placeholder">[Media Attachment]</div>'

    attrs["alt"] = attrs.pop("alt", None) or "Evernote Image"
    attrs.pop("style", None)
    rendered = "".join(
        f' {name}="{escape(decode_entities(value), quote=True)}"'
        for name, value in attrs.items()
    )
    return f'<img{rendered} style="max-width: 100%;">'


def enml_to_html(enml: str) -> str:
    """Rewrite ENML into an HTML fragment; ordinary tags pass through."""
    if not enml:
        return ""

    html = _strip_prolog(enml)
    html = re.sub(r"<en-note\b[^>]*>", '<div class="note-content">', html, flags=_I)
    html = re.sub(r"</en-note\s*>", "</div>", html, flags=_I)

    html = _CRYPT.sub('<div class="encrypted-content">[Encrypted Content]</div>', html)

    html = _TODO_CHECKED.sub('<input type="checkbox" checked disabled> ', html)
    html = _TODO.sub('<input type="checkbox" disabled> ', html)
    html = _TODO_CLOSE.sub("", html)

    # Image tags carry escaped attribute values, so decode only around them
    html = _MEDIA_CLOSE.sub("", html)
    pieces = []
    position = 0
    for match in _MEDIA.finditer(html):
        pieces.append(decode_entities(html[position:match.start()]))
        pieces.append(_media_to_html(match))
        position = match.end()
    pieces.append(decode_entities(html[position:]))
    return "".join(pieces)

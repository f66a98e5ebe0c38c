"""
Welcome card composition.

Turns query parameters plus optional stored guild defaults into a fully
populated CardRequest, lays out the text, and assembles an SVG document that
is rasterized to PNG. Everything here except rasterize() is pure.
"""
import html
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from card_images import CardImage

# ----------------------------
# Design constants
# ----------------------------
CANVAS_W = 1200
CANVAS_H = 420

PANEL_X, PANEL_Y, PANEL_W, PANEL_H, PANEL_R = 40, 40, 1120, 340, 28

AVATAR_CX, AVATAR_CY = 190, 210
AVATAR_R = 86
AVATAR_RING_R = 96

ICON_CX, ICON_CY, ICON_R = 1084, 96, 32

TEXT_X = 330
TEXT_RIGHT_MARGIN = 60
TEXT_MAX_W = CANVAS_W - TEXT_X - TEXT_RIGHT_MARGIN
SERVER_ROW_Y = 124
TAG_ROW_Y = 148
TITLE_Y = 200
SUBTITLE_Y = 250

GLYPH_WIDTH_FACTOR = 0.60
TITLE_BASE, TITLE_MIN = 44, 22
SUBTITLE_BASE, SUBTITLE_MIN = 22, 16

TITLE_MAX_CHARS = 60
SUBTITLE_MAX_CHARS = 90
USERNAME_MAX_CHARS = 32
SERVER_NAME_MAX_CHARS = 100
MEMBER_COUNT_MAX_CHARS = 12
SERVER_ROW_MAX_CHARS = 48
ELLIPSIS = "…"

OVERLAY_MIN, OVERLAY_MAX = 0.0, 0.85

DEFAULT_BACKGROUND_COLOR = "#0b1020"
DEFAULT_TEXT_COLOR = "#ffffff"
DEFAULT_OVERLAY = 0.35
DEFAULT_TITLE = "{user.name} just joined the server"
DEFAULT_SUBTITLE = "Member #{membercount}"
DEFAULT_SUBTITLE_NO_COUNT = "Welcome!"
DEFAULT_USERNAME = "New Member"
DEFAULT_SERVER_NAME = "Server"

WATERMARK = "World of Communities • Welcome System"
FONT_FAMILY = "'DejaVu Sans', 'Segoe UI', Arial, sans-serif"

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
_TOKEN = re.compile(r"\{([a-z_.]+)\}")
_TRUE = ("true", "1", "yes", "on")
_SINGLE_LINE = str.maketrans("\r\n\t", "   ")
# Code points XML 1.0 does not allow in a document, even escaped
_XML_FORBIDDEN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


@dataclass(frozen=True)
class CardDefaults:
    """Per-guild stored card defaults. Any field may be missing."""
    title: Optional[str] = None
    subtitle: Optional[str] = None
    background_color: Optional[str] = None
    text_color: Optional[str] = None
    overlay_opacity: Any = None
    background_url: Optional[str] = None
    show_avatar: Any = None

    @classmethod
    def from_mapping(cls, doc: Optional[Mapping[str, Any]]) -> Optional["CardDefaults"]:
        """Build from a stored `welcome.card` document (camelCase keys)."""
        if not isinstance(doc, Mapping):
            return None
        return cls(
            title=doc.get("title"),
            subtitle=doc.get("subtitle"),
            background_color=doc.get("backgroundColor"),
            text_color=doc.get("textColor"),
            overlay_opacity=doc.get("overlayOpacity"),
            background_url=doc.get("backgroundUrl"),
            show_avatar=doc.get("showAvatar"),
        )


@dataclass(frozen=True)
class CardRequest:
    background_source: Optional[str]
    background_color: str
    text_color: str
    overlay_opacity: float
    title: str
    subtitle: str
    show_avatar: bool
    avatar_source: Optional[str]
    server_icon_source: Optional[str]
    username: str
    server_name: str
    member_count: str
    tag: str = ""
    user_id: str = ""

    def tokens(self) -> Dict[str, str]:
        name = self.username
        return {
            "user": name,
            "username": name,
            "user.name": name,
            "mention": f"@{name}",
            "tag": self.tag or name,
            "id": self.user_id,
            "user.id": self.user_id,
            "server": self.server_name,
            "server.name": self.server_name,
            "membercount": self.member_count,
            "server.member_count": self.member_count,
        }

    def as_json(self) -> Dict[str, Any]:
        return {
            "backgroundUrl": self.background_source,
            "backgroundColor": self.background_color,
            "textColor": self.text_color,
            "overlayOpacity": self.overlay_opacity,
            "title": self.title,
            "subtitle": self.subtitle,
            "showAvatar": self.show_avatar,
            "avatarUrl": self.avatar_source,
            "serverIconUrl": self.server_icon_source,
            "username": self.username,
            "serverName": self.server_name,
            "memberCount": self.member_count,
            "tag": self.tag,
            "userId": self.user_id,
        }


@dataclass(frozen=True)
class CardText:
    title: str
    subtitle: str
    title_size: int
    subtitle_size: int


# ----------------------------
# Parameter resolution
# ----------------------------
def _as_str(v: Any) -> str:
    return "" if v is None else _XML_FORBIDDEN.sub("", str(v)).strip()


def _first(*values: Any) -> str:
    for v in values:
        s = _as_str(v)
        if s:
            return s
    return ""


def _safe_color(*candidates: Any) -> Optional[str]:
    for c in candidates:
        s = _as_str(c)
        if _HEX_COLOR.match(s):
            return s
    return None


def _as_bool(v: Any) -> Optional[bool]:
    if isinstance(v, bool):
        return v
    s = _as_str(v).lower()
    if not s:
        return None
    return s in _TRUE


def clamp_opacity(v: Any) -> float:
    """Clamp to [0, 0.85]; anything non-numeric becomes 0."""
    try:
        n = float(v)
    except (TypeError, ValueError):
        return OVERLAY_MIN
    if not math.isfinite(n):
        return OVERLAY_MIN
    return max(OVERLAY_MIN, min(OVERLAY_MAX, n))


def truncate(text: str, cap: int) -> str:
    if len(text) <= cap:
        return text
    return text[:cap - 1] + ELLIPSIS


def resolve_card_request(query: Mapping[str, Any], defaults: Optional[CardDefaults] = None) -> CardRequest:
    """
    Merge request params > stored guild defaults > constants.

    Pure: `query` is any str mapping (e.g. starlette QueryParams). A value that
    is present but illegal (bad hex color) falls through to the next layer,
    except overlay opacity, which is clamped wherever it comes from.
    """
    d = defaults or CardDefaults()
    q = query.get

    member_count = truncate(_first(q("membercount"), q("memberCount")), MEMBER_COUNT_MAX_CHARS)

    raw_opacity = _first(q("overlayOpacity"))
    if raw_opacity:
        overlay = clamp_opacity(raw_opacity)
    elif d.overlay_opacity is not None and _as_str(d.overlay_opacity):
        overlay = clamp_opacity(d.overlay_opacity)
    else:
        overlay = DEFAULT_OVERLAY

    show_avatar = _as_bool(q("showAvatar"))
    if show_avatar is None:
        show_avatar = _as_bool(d.show_avatar)
    if show_avatar is None:
        show_avatar = True

    default_subtitle = DEFAULT_SUBTITLE if member_count else DEFAULT_SUBTITLE_NO_COUNT

    return CardRequest(
        background_source=_first(
            q("backgroundUrl"), q("backgroundImageUrl"), q("background"), d.background_url
        ) or None,
        background_color=_safe_color(q("backgroundColor"), d.background_color) or DEFAULT_BACKGROUND_COLOR,
        text_color=_safe_color(q("textColor"), d.text_color) or DEFAULT_TEXT_COLOR,
        overlay_opacity=overlay,
        title=_first(q("title"), d.title) or DEFAULT_TITLE,
        subtitle=_first(q("subtitle"), d.subtitle) or default_subtitle,
        show_avatar=show_avatar,
        avatar_source=_first(q("avatarUrl")) or None,
        server_icon_source=_first(q("serverIconUrl")) or None,
        username=truncate(_first(q("username")) or DEFAULT_USERNAME, USERNAME_MAX_CHARS),
        server_name=truncate(_first(q("serverName")) or DEFAULT_SERVER_NAME, SERVER_NAME_MAX_CHARS),
        member_count=member_count,
        tag=truncate(_first(q("tag")), USERNAME_MAX_CHARS),
        user_id=_first(q("userId")),
    )


# ----------------------------
# Text
# ----------------------------
def substitute(template: str, tokens: Mapping[str, str]) -> str:
    """Single pass: substituted values are never re-scanned; unknown tokens stay."""
    def repl(m):
        key = m.group(1)
        return tokens[key] if key in tokens else m.group(0)
    return _TOKEN.sub(repl, template)


def render_text(template: str, tokens: Mapping[str, str], cap: int) -> str:
    text = substitute(template, tokens).translate(_SINGLE_LINE)
    return truncate(text, cap)


def fit_font_size(text: str, max_width: float, base: int, min_size: int) -> int:
    n = max(len(text), 1)
    needed = max_width / (n * GLYPH_WIDTH_FACTOR)
    size = math.floor(min(base, needed))
    return max(min_size, min(base, size))


def layout_text(card: CardRequest) -> CardText:
    tokens = card.tokens()
    title = render_text(card.title, tokens, TITLE_MAX_CHARS)
    subtitle = render_text(card.subtitle, tokens, SUBTITLE_MAX_CHARS)
    return CardText(
        title=title,
        subtitle=subtitle,
        title_size=fit_font_size(title, TEXT_MAX_W, TITLE_BASE, TITLE_MIN),
        subtitle_size=fit_font_size(subtitle, TEXT_MAX_W, SUBTITLE_BASE, SUBTITLE_MIN),
    )


# ----------------------------
# Document
# ----------------------------
def _esc(s: str) -> str:
    return html.escape(_XML_FORBIDDEN.sub("", s), quote=True)


def build_card_svg(
    card: CardRequest,
    text: CardText,
    background: Optional[CardImage] = None,
    avatar: Optional[CardImage] = None,
    server_icon: Optional[CardImage] = None,
) -> str:
    """Assemble the SVG document. Every user-supplied string goes through _esc()."""
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" xmlns:xlink="http://www.w3.org/1999/xlink" '
        f'width="{CANVAS_W}" height="{CANVAS_H}" viewBox="0 0 {CANVAS_W} {CANVAS_H}">',
        "<defs>",
        '<linearGradient id="bg" x1="0" y1="0" x2="1" y2="1">'
        f'<stop offset="0" stop-color="{_esc(card.background_color)}"/>'
        '<stop offset="0.55" stop-color="#070a12"/>'
        '<stop offset="1" stop-color="#120818"/>'
        "</linearGradient>",
        '<linearGradient id="accent" x1="0" y1="0" x2="1" y2="1">'
        '<stop offset="0" stop-color="#7c3aed"/>'
        '<stop offset="1" stop-color="#f43f5e"/>'
        "</linearGradient>",
        f'<clipPath id="avatarClip"><circle cx="{AVATAR_CX}" cy="{AVATAR_CY}" r="{AVATAR_R}"/></clipPath>',
        f'<clipPath id="iconClip"><circle cx="{ICON_CX}" cy="{ICON_CY}" r="{ICON_R}"/></clipPath>',
        "</defs>",
        f'<rect x="0" y="0" width="{CANVAS_W}" height="{CANVAS_H}" fill="url(#bg)"/>',
    ]

    if background:
        parts.append(
            f'<image x="0" y="0" width="{CANVAS_W}" height="{CANVAS_H}" '
            f'preserveAspectRatio="xMidYMid slice" xlink:href="{background.data_uri}"/>'
        )

    parts.append(
        f'<rect x="0" y="0" width="{CANVAS_W}" height="{CANVAS_H}" '
        f'fill="#000000" fill-opacity="{card.overlay_opacity:.2f}"/>'
    )
    parts.append(
        f'<rect x="{PANEL_X}" y="{PANEL_Y}" width="{PANEL_W}" height="{PANEL_H}" rx="{PANEL_R}" '
        'fill="#ffffff" fill-opacity="0.05" stroke="#ffffff" stroke-opacity="0.14" stroke-width="2"/>'
    )
    parts.append(f'<rect x="{TEXT_X}" y="272" width="120" height="6" rx="3" fill="url(#accent)"/>')

    if card.show_avatar:
        parts.append(
            f'<circle cx="{AVATAR_CX}" cy="{AVATAR_CY}" r="{AVATAR_RING_R}" '
            'fill="none" stroke="url(#accent)" stroke-width="6"/>'
        )
        if avatar:
            x, y, size = AVATAR_CX - AVATAR_R, AVATAR_CY - AVATAR_R, AVATAR_R * 2
            parts.append(
                f'<image x="{x}" y="{y}" width="{size}" height="{size}" clip-path="url(#avatarClip)" '
                f'preserveAspectRatio="xMidYMid slice" xlink:href="{avatar.data_uri}"/>'
            )
        else:
            parts.append(
                f'<circle class="avatar-placeholder" cx="{AVATAR_CX}" cy="{AVATAR_CY}" r="{AVATAR_R}" '
                'fill="#ffffff" fill-opacity="0.08"/>'
            )

    if server_icon:
        x, y, size = ICON_CX - ICON_R, ICON_CY - ICON_R, ICON_R * 2
        parts.append(
            f'<image x="{x}" y="{y}" width="{size}" height="{size}" clip-path="url(#iconClip)" '
            f'preserveAspectRatio="xMidYMid slice" xlink:href="{server_icon.data_uri}"/>'
        )

    parts.append(
        f'<text class="server" x="{TEXT_X}" y="{SERVER_ROW_Y}" font-family="{FONT_FAMILY}" font-size="16" '
        f'font-weight="600" fill="#ffffff" fill-opacity="0.78">'
        f'{_esc(truncate(card.server_name, SERVER_ROW_MAX_CHARS))}</text>'
    )
    if card.tag:
        tag = card.tag if card.tag.startswith("@") else f"@{card.tag}"
        parts.append(
            f'<text class="tag" x="{TEXT_X}" y="{TAG_ROW_Y}" font-family="{FONT_FAMILY}" font-size="14" '
            f'font-weight="600" fill="#ffffff" fill-opacity="0.45">{_esc(tag)}</text>'
        )

    color = _esc(card.text_color)
    parts.append(
        f'<text class="title" x="{TEXT_X}" y="{TITLE_Y}" font-family="{FONT_FAMILY}" '
        f'font-size="{text.title_size}" font-weight="800" fill="{color}">{_esc(text.title)}</text>'
    )
    parts.append(
        f'<text class="subtitle" x="{TEXT_X}" y="{SUBTITLE_Y}" font-family="{FONT_FAMILY}" '
        f'font-size="{text.subtitle_size}" font-weight="600" fill="{color}" fill-opacity="0.75">'
        f'{_esc(text.subtitle)}</text>'
    )
    parts.append(
        f'<text class="watermark" x="{TEXT_X}" y="{PANEL_Y + PANEL_H - 28}" font-family="{FONT_FAMILY}" '
        f'font-size="14" font-weight="600" fill="#ffffff" fill-opacity="0.35">{_esc(WATERMARK)}</text>'
    )
    parts.append("</svg>")
    return "\n".join(parts)


def rasterize(svg: str) -> bytes:
    """SVG -> PNG at the fixed canvas size. CPU bound; call from a worker thread."""
    import cairosvg
    return cairosvg.svg2png(
        bytestring=svg.encode("utf-8"),
        output_width=CANVAS_W,
        output_height=CANVAS_H,
    )

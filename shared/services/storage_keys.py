from __future__ import annotations

import random
import re
import string
import unicodedata
from datetime import datetime
from uuid import UUID, uuid4

from shared.services.config_store import NamingConfig
from shared.utils import as_utc, utc_now


_ALLOWED_CHARS_RE = re.compile(r"[^A-Za-z0-9._\-/]")
_MULTI_SLASH_RE = re.compile(r"/{2,}")
_MULTI_DASH_RE = re.compile(r"-{2,}")
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits
_PLACEHOLDER_RE = re.compile(r"\{[A-Za-z0-9]+\}")


def split_filename(filename: str) -> tuple[str, str]:
    """Return (basename, extension) with the extension lower-cased and without the dot."""
    name = str(filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if "." in name.strip("."):
        base, _, ext = name.rpartition(".")
        if base:
            return base, ext.lower()
    return name, ""


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _normalize_part(value: str, naming: NamingConfig) -> str:
    opts = naming.options
    v = str(value)
    if opts.strip_accents:
        v = strip_accents(v)
    if opts.replace_spaces_with_dash:
        v = re.sub(r"\s+", "-", v)
    if opts.lowercase:
        v = v.lower()
    return v


def _sanitize(key: str) -> str:
    key = _ALLOWED_CHARS_RE.sub("", key)
    key = _MULTI_SLASH_RE.sub("/", key)
    key = _MULTI_DASH_RE.sub("-", key)
    # "{basename}.{ext}" with an empty ext leaves a trailing dot in the segment
    key = re.sub(r"\.+(?=/|$)", "", key)
    return key.strip("/")


def _truncate(key: str, max_length: int | None) -> str:
    if not max_length or len(key) <= max_length:
        return key
    head, sep, ext = key.rpartition(".")
    if sep and "/" not in ext and len(ext) < max_length - 1:
        return head[: max_length - len(ext) - 1] + "." + ext
    return key[:max_length]


def build_storage_key(
    naming: NamingConfig,
    *,
    space_name: str,
    filename: str,
    now_utc: datetime | None = None,
    rand: random.Random | None = None,
) -> str:
    """Expand the naming template into an object-storage key.

    Placeholders are replaced literally, every occurrence, from a fixed set:
    {yyyy} {mm} {dd} {HH} {ii} {ss} {uuid} {random8} {space} {filename}
    {basename} {ext} and the aliases {year} {month} {day}.
    """
    now = as_utc(now_utc) or utc_now()
    rnd = rand or random.SystemRandom()
    basename, ext = split_filename(filename)

    values = {
        "{yyyy}": f"{now.year:04d}",
        "{year}": f"{now.year:04d}",
        "{mm}": f"{now.month:02d}",
        "{month}": f"{now.month:02d}",
        "{dd}": f"{now.day:02d}",
        "{day}": f"{now.day:02d}",
        "{HH}": f"{now.hour:02d}",
        "{ii}": f"{now.minute:02d}",
        "{ss}": f"{now.second:02d}",
        "{uuid}": str(uuid4() if rand is None else UUID(int=rnd.getrandbits(128), version=4)),
        "{random8}": "".join(rnd.choice(_RANDOM_ALPHABET) for _ in range(8)),
        "{space}": _normalize_part(space_name, naming).replace("/", "-"),
        "{filename}": _normalize_part(f"{basename}.{ext}" if ext else basename, naming),
        "{basename}": _normalize_part(basename, naming),
        "{ext}": ext,
    }

    # Single pass so substituted values are never re-expanded
    key = _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(0), m.group(0)), naming.template)

    # Literal text in the template is normalized the same way as substituted values
    if naming.options.replace_spaces_with_dash:
        key = re.sub(r"\s+", "-", key)
    if naming.options.lowercase:
        key = key.lower()

    key = _truncate(_sanitize(key), naming.options.max_length)
    if not key:
        key = f"{now.year:04d}/{uuid4()}"
    return key

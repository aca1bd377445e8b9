import re

CRATE_NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9_-]{0,63}")


def is_valid_crate_name(name: str) -> bool:
    return CRATE_NAME_RE.fullmatch(name) is not None


def canonical_name(name: str) -> str:
    """
    Name used for uniqueness: lowercase, with `-` and `_` treated as equal.
    """
    return name.lower().replace("-", "_")


def index_path(name: str) -> str:
    """
    Relative path of a crate's file inside the registry index.

    1-char names live under `1/`, 2-char under `2/`, 3-char under
    `3/<first char>/`, everything else under `<ab>/<cd>/`.
    """
    n = name.lower()
    if not n:
        raise ValueError("crate name must not be empty")
    if len(n) == 1:
        return f"1/{n}"
    if len(n) == 2:
        return f"2/{n}"
    if len(n) == 3:
        return f"3/{n[0]}/{n}"
    return f"{n[0:2]}/{n[2:4]}/{n}"


def normalize_tag(value: str) -> str:
    """Keywords, categories and authors are stored lowercased and trimmed."""
    return value.strip().lower()

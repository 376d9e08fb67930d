"""Path component helpers with the kernel's slash handling."""


def basename(path: str) -> str:
    """Return the last component of *path*, ignoring trailing slashes.

    An empty path gives ``"."`` and a path made only of slashes gives ``"/"``.
    """
    if not path:
        return "."
    stripped = path.rstrip("/") or "/"
    if len(stripped) == 1:
        return stripped
    return stripped[stripped.rfind("/") + 1:]


def dirname(path: str) -> str:
    """Return everything in *path* before its last component.

    Trailing slashes are ignored, a path without a directory part gives
    ``"."`` and a component directly under the root gives ``"/"``.
    """
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    cut = stripped.rfind("/")
    if cut < 0:
        return "."
    return stripped[:cut].rstrip("/") or "/"
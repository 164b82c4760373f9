from __future__ import annotations

from pathlib import Path
import sys


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    key = src_text.replace('\\', '/').lower()
    sys.path[:] = [src_text] + [
        item for item in sys.path
        if str(item or '').strip() and str(item).replace('\\', '/').lower() != key
    ]


_prepend_repo_src_to_syspath()

"""ROM filename parser.

Turns ROM filenames into display titles.
"""

import os
import re

# Tags in No-Intro / GoodTools style names: (USA), [!], {Hack}
TAG_PATTERN = re.compile(r"\([^)]*\)|\[[^\]]*\]|\{[^}]*\}")
WHITESPACE_PATTERN = re.compile(r"\s+")


def clean_game_title(name: str) -> str:
    """
    Strip ROM naming conventions from a filename stem.

    Args:
        name: Filename without extension (e.g., "Super_Mario_Bros (USA) [!]")

    Returns:
        Display title (e.g., "Super Mario Bros")
    """
    title = TAG_PATTERN.sub("", name)
    title = title.replace("_", " ")
    return WHITESPACE_PATTERN.sub(" ", title).strip()


def title_from_path(file_path: str) -> str:
    """Derive a display title from a file path."""
    stem, _ext = os.path.splitext(os.path.basename(file_path))
    return clean_game_title(stem)

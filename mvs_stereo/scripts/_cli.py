'''
Shared bits of the command-line tools: logging setup and the
"one-line error, non-zero exit" wrapper.
'''
from __future__ import annotations

import logging
import sys
from typing import Callable

import cv2


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def run_main(main: Callable[[], int]) -> None:
    # Partial outputs written before a failure are left where they are
    try:
        code = main()
    except (RuntimeError, FileNotFoundError, ValueError, cv2.error) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)

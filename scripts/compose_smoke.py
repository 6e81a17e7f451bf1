#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time

from urllib.request import urlopen
from urllib.error import URLError


def main() -> int:
    base_url = os.getenv("DOCCHAT_API_URL", "http://localhost:8000").rstrip("/")
    try:
        with urlopen(f"{base_url}/livez", timeout=5) as r:
            print("/livez:", r.read().decode("utf-8"))
        with urlopen(f"{base_url}/healthz", timeout=5) as r:
            print("/healthz:", r.read().decode("utf-8"))
        # Chunk store may still be opening
        time.sleep(0.5)
        with urlopen(f"{base_url}/healthz/ready", timeout=5) as r:
            print("/healthz/ready:", r.read().decode("utf-8"))
    except URLError as exc:
        print(f"Compose smoke failed: {exc}", file=sys.stderr)
        return 1
    print("Compose smoke passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""Check that every product image URL still serves an image."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database import fetch_products, update_product
from images import check_image_url


def _all_products() -> list[dict[str, object]]:
    products: list[dict[str, object]] = []
    page = 1
    while True:
        result = fetch_products(visible_only=False, page=page, limit=100)
        products.extend(result["products"])
        if not result["pagination"]["hasNext"]:
            return products
        page += 1


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--deactivate", action="store_true", help="Hide products whose image is unreachable")
    parser.add_argument("--timeout", type=float, default=5, help="Seconds to wait for each image host")
    parser.add_argument("--delay", type=float, default=0.2, help="Pause between requests")
    args = parser.parse_args()

    broken = 0
    for product in _all_products():
        url = product.get("image_url")
        if not url:
            print(f"[skip] {product['id']} {product['name']}: no image")
            continue
        result = check_image_url(str(url), timeout=args.timeout)
        if result["valid"]:
            print(f"[ok] {product['id']} {product['name']}")
        else:
            broken += 1
            reason = result.get("error") or f"status {result['statusCode']}, {result.get('contentType') or 'no type'}"
            print(f"[broken] {product['id']} {product['name']}: {reason}")
            if args.deactivate and product.get("is_active"):
                update_product(int(product["id"]), is_active=False)
                print(f"[hidden] {product['id']} {product['name']}")
        time.sleep(args.delay)

    print(f"{broken} broken image(s) found")
    return 1 if broken else 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
from __future__ import annotations

import argparse

from unwrapper.errors import MalformedPayloadError
from unwrapper.formats import EncodingVariant, detect_variant, extract_article_id
from unwrapper.payload import decode_legacy_identifier


def main() -> None:
    ap = argparse.ArgumentParser(description="Show how a wrapped link is encoded (no network access)")
    ap.add_argument("url", help="Wrapped link as found in the feed")
    ns = ap.parse_args()
    article_id = extract_article_id(ns.url)
    variant = detect_variant(ns.url)
    out: dict[str, object] = {
        "variant": variant.value,
        "article_id_length": len(article_id) if article_id else 0,
    }
    if variant is EncodingVariant.LEGACY_EMBEDDED and article_id:
        try:
            out["decoded"] = decode_legacy_identifier(article_id)
        except MalformedPayloadError as e:
            out["error"] = str(e)
    print(out)


if __name__ == "__main__":
    main()

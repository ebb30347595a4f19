#!/usr/bin/env python3
"""
Run the vision extractor on local images and print what would be prefilled.

Usage:
    python extract_tips.py earnings <image> [<image> ...]
    python extract_tips.py receipt <image> [<image> ...]

With no images given, every .jpg/.jpeg/.png in ./uploads is read. Without
GOOGLE_API_KEY the mock backend runs and every result is a placeholder.
"""

import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from tipentry.vision import VisionExtractor, earnings_to_draft, receipt_to_draft


def _find_images(args):
    if args:
        return [Path(a) for a in args]
    uploads_dir = Path(__file__).parent / "uploads"
    return sorted(
        list(uploads_dir.glob("*.jpg")) + list(uploads_dir.glob("*.jpeg")) + list(uploads_dir.glob("*.png"))
    )


async def _run(kind: str, images) -> None:
    extractor = VisionExtractor()
    print(f"Vision backend: {extractor.mode}")

    for image_path in images:
        print(f"\n🧾 Processing {kind}: {image_path.name}")
        print("=" * 50)

        if kind == "earnings":
            extraction = await extractor.analyze_earnings_screenshot(str(image_path))
            draft = earnings_to_draft(extraction)
        else:
            extraction = await extractor.analyze_receipt(str(image_path))
            draft = receipt_to_draft(extraction)

        if extraction.placeholder:
            print("⚠️  Placeholder result, not read from the image")
        elif extraction.needs_review:
            print(f"⚠️  Needs review: {extraction.review_reason}")

        print("\n📋 EXTRACTED:")
        print(json.dumps(extraction.model_dump(mode="json", by_alias=True), indent=2))

        print("\n💰 DRAFT ENTRY:")
        print("-" * 20)
        print(f"Date:  {draft.entry_date}")
        print(f"Tips:  ${draft.tips_earned:.2f}")
        print(f"Hours: {draft.hours_worked}")
        print(f"Notes: {draft.notes}")


def main() -> int:
    if len(sys.argv) < 2 or sys.argv[1] not in {"earnings", "receipt"}:
        print(__doc__)
        return 2

    kind = sys.argv[1]
    images = _find_images(sys.argv[2:])
    if not images:
        print("No images found in uploads folder!")
        return 1

    missing = [p for p in images if not p.exists()]
    if missing:
        print(f"❌ File not found: {missing[0]}")
        return 1

    asyncio.run(_run(kind, images))
    return 0


if __name__ == "__main__":
    sys.exit(main())

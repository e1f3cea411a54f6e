#!/usr/bin/env python3
"""Render the default overlay PNG for every registered frame.

Overlays are written to ``FRAME_ASSET_DIR`` (or ``heroframe/templates/frames``)
under the file name the frame registry expects. Existing files are kept
unless ``--force`` is given so hand-made artwork is never overwritten.
"""
from __future__ import annotations

import argparse
import pathlib

from heroframe.config import get_settings
from heroframe.templates.artwork import write_default_overlay
from heroframe.templates.frames import load_frame_registry


def render_assets(asset_dir: pathlib.Path, force: bool = False) -> None:
    for descriptor in load_frame_registry().values():
        target = asset_dir / descriptor.overlay
        if target.exists() and not force:
            print(f"Keeping {target.name}")
            continue
        write_default_overlay(descriptor, asset_dir)
        print(f"Rendered {descriptor.frame_type} -> {target}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--asset-dir", type=pathlib.Path, default=None)
    parser.add_argument("--force", action="store_true", help="overwrite existing overlays")
    args = parser.parse_args()
    render_assets(args.asset_dir or get_settings().frame_asset_dir, force=args.force)


if __name__ == "__main__":
    main()

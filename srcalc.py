import argparse
import logging
import sys
from pathlib import Path

import algorithm
from note_sequence import Mod
from rating_errors import RatingError

__version__ = "0.1.0"


def note_files(path):
    if path.is_file():
        return [path]
    return sorted(file for file in path.iterdir() if file.suffix == ".json")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Calculate SR for keymode note files.")
    parser.add_argument("path", nargs='?', default=Path.cwd(), type=Path, help='A .json note file, or a folder containing them.')
    parser.add_argument("--mod", "-M", type=str, choices=[mod.value for mod in Mod], default=Mod.NM.value, help='Mod to apply (NM, DT, HT).')
    parser.add_argument("--workers", "-j", type=int, default=algorithm.DEFAULT_WORKERS, help='Threads used for the bar computations.')
    parser.add_argument("--dump-bars", type=Path, default=None, help='Write the per-millisecond bars of each file as CSV into this folder.')
    parser.add_argument("--verbose", "-v", action="store_true", help="Log section timings.")
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.version:
        print(f"srcalc {__version__}")
        return 0

    path = args.path
    if not path.exists():
        print(f"Error: {path} does not exist.")
        return 1

    if args.dump_bars is not None:
        args.dump_bars.mkdir(parents=True, exist_ok=True)

    mod = args.mod
    status = 0
    for file in note_files(path):
        try:
            notes, key_count, od = algorithm.load_note_file(file)
            result = algorithm.compute_rating(notes, key_count, od, mod, max_workers=args.workers)
            if args.dump_bars is not None:
                frame = algorithm.rating_frame(notes, key_count, od, mod, max_workers=args.workers)
                frame.to_csv(args.dump_bars / f"{file.stem}.csv", index=False)
        except RatingError as e:
            print(f"({mod}) {file.stem} | error: {type(e).__name__}: {e}")
            status = 1
            continue
        print(f"({mod}) {file.stem} | {result:.4f}")
    return status


if __name__ == "__main__":
    sys.exit(main())

"""
Command-line entry point running the pipeline steps in dependency order.

Usage (from project root):

    mtpl-modelling construct
    mtpl-modelling explore --dataset mtpl2
    mtpl-modelling freqmodel
    mtpl-modelling all
"""

import argparse
import logging

from . import config, construct_datasets, explore, freq_model


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mtpl-modelling",
                                     description="Explore and model the French MTPL claim datasets.")
    parser.add_argument("step", choices=["construct", "explore", "freqmodel", "all"])
    parser.add_argument("--dataset", choices=sorted(config.DATASET_FILES), default="mtpl1",
                        help="merged table to explore (explore step only)")
    parser.add_argument("--raw-dir", default=config.RAW_DIR, help="directory with the raw CSVs")
    parser.add_argument("--no-download", action="store_true",
                        help="fail instead of fetching MTPL2 from OpenML when the CSVs are missing")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.step in ("construct", "all"):
        construct_datasets.main(raw_dir=args.raw_dir, allow_download=not args.no_download)

    if args.step == "explore":
        explore.main(args.dataset)
    elif args.step == "all":
        for name in sorted(config.DATASET_FILES):
            explore.main(name)

    if args.step in ("freqmodel", "all"):
        freq_model.main()


if __name__ == "__main__":
    main()

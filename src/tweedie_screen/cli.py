"""
Command line entry point.

Example
-------
tweedie-screen counts.tsv metadata.tsv results/ \\
    --fixed-effects diagnosis,age --reference "diagnosis,control" --cores 8
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

from .config import CORRECTION_METHODS, ModelSpec
from .errors import TweedieScreenError
from .families import ModelFamily
from .io import load_feature_table, load_metadata, write_results
from .runner import analyze

logger = logging.getLogger(__name__)


def _split_list(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.split(",") if v.strip())


def _parse_reference(value: Optional[str]) -> dict[str, str]:
    """Parse ``"var,level;var2,level2"``."""
    refs = {}
    if not value:
        return refs
    for pair in value.split(";"):
        if not pair.strip():
            continue
        try:
            var, level = pair.split(",", 1)
        except ValueError:
            raise argparse.ArgumentTypeError(
                f"Reference '{pair}' must be given as 'covariate,level'"
            ) from None
        refs[var.strip()] = level.strip()
    return refs


def _parse_fallbacks(values: Optional[Sequence[str]]) -> dict[str, Optional[str]]:
    """Parse ``FAMILY=FALLBACK`` (``FAMILY=none`` ends the chain)."""
    out: dict[str, Optional[str]] = {}
    for item in values or ():
        if "=" not in item:
            raise argparse.ArgumentTypeError(f"Fallback '{item}' must be given as FAMILY=FALLBACK")
        fam, fb = item.split("=", 1)
        out[fam.strip()] = None if fb.strip().lower() in {"", "none"} else fb.strip()
    return out


def _default_cores() -> int:
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)) - 2)
    return max(1, (os.cpu_count() or 1) - 2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tweedie-screen",
        description="Per-feature differential abundance with compound Poisson models",
    )
    parser.add_argument('features', help='Feature (count) table: .tsv, .csv or .xlsx')
    parser.add_argument('metadata', help='Sample metadata table: .tsv, .csv or .xlsx')
    parser.add_argument('output', help='Output directory')
    parser.add_argument(
        '--fixed-effects',
        required=True,
        help='Comma-separated covariates for the design matrix',
    )
    parser.add_argument(
        '--random-effects',
        default=None,
        help='Comma-separated grouping covariates',
    )
    parser.add_argument(
        '--reference',
        default=None,
        help='Reference levels as "covariate,level;covariate2,level2"',
    )
    parser.add_argument(
        '--base-model',
        choices=[f.value for f in ModelFamily],
        default=ModelFamily.CPLM.value,
        help='Model family tried first for every feature',
    )
    parser.add_argument(
        '--fallback',
        action='append',
        default=None,
        metavar='FAMILY=FALLBACK',
        help='Override a fallback pointer; repeatable (FAMILY=none ends the chain)',
    )
    parser.add_argument(
        '--features-as-rows',
        action='store_true',
        help='Feature table has features as rows and samples as columns',
    )
    parser.add_argument(
        '--no-standardize',
        dest='standardize',
        action='store_false',
        help='Do not z-score continuous covariates',
    )
    parser.add_argument(
        '--no-offset',
        dest='adjust_offset',
        action='store_false',
        help='Disable normalization offsets',
    )
    parser.add_argument(
        '--normalization-column',
        default='scale_factor',
        help='Metadata column holding per-sample offsets',
    )
    parser.add_argument(
        '--min-nonzero',
        type=int,
        default=1,
        help='Skip features with fewer non-zero observations',
    )
    parser.add_argument(
        '--min-total-count',
        type=float,
        default=0.0,
        help='Skip features with a smaller total count',
    )
    parser.add_argument(
        '--min-prevalence',
        type=float,
        default=0.0,
        help='Skip features non-zero in a smaller fraction of samples',
    )
    parser.add_argument(
        '--tweedie-power',
        type=float,
        default=None,
        help='Fixed Tweedie variance power in (1, 2); profiled when omitted',
    )
    parser.add_argument(
        '--correction',
        choices=list(CORRECTION_METHODS),
        default='BH',
        help='Multiple testing correction',
    )
    parser.add_argument(
        '--cores',
        type=int,
        default=None,
        help='Number of worker processes (default: available cores - 2)',
    )
    parser.add_argument(
        '--timeout',
        type=float,
        default=None,
        help='Per-feature time limit in seconds (parallel runs)',
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Verbose logging',
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        spec = ModelSpec(
            fixed_effects=_split_list(args.fixed_effects),
            random_effects=_split_list(args.random_effects),
            reference=_parse_reference(args.reference),
            base_model=args.base_model,
            fallbacks=_parse_fallbacks(args.fallback),
            standardize=args.standardize,
            adjust_offset=args.adjust_offset,
            normalization_column=args.normalization_column,
            worker_count=args.cores if args.cores is not None else _default_cores(),
            min_nonzero=args.min_nonzero,
            min_total_count=args.min_total_count,
            min_prevalence=args.min_prevalence,
            tweedie_power=args.tweedie_power,
            correction=args.correction,
            timeout=args.timeout,
        )
        features = load_feature_table(args.features)
        metadata = load_metadata(args.metadata)
        result = analyze(features, metadata, spec, features_as_rows=args.features_as_rows)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except TweedieScreenError as e:
        logger.error(str(e))
        return 1

    write_results(result, args.output)
    return 0


if __name__ == '__main__':
    sys.exit(main())

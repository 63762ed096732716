# cascadenet/cli/main.py
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from cascadenet.config import limits_from_cfg, load_cfg, policy_from_cfg, training_params_from_cfg
from cascadenet.core.cascade import Node, RetryNetwork, load_network, new_network
from cascadenet.core.directory import ModelDirectory
from cascadenet.core.errors import CascadeError
from cascadenet.core.jsonutil import read_json_obj
from cascadenet.core.resources import ResidencyTracker
from cascadenet.core.shape import NetworkShape
from cascadenet.core.stage import StageNetwork
from cascadenet.core.training import outputs_match
from cascadenet.data import load_csv_dataset

logger = logging.getLogger(__name__)


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True))


def _configure_logging(level: Optional[str]) -> None:
    name = (level or os.environ.get("CASCADENET_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(args: argparse.Namespace, cfg: Dict[str, Any]) -> Node:
    return load_network(
        Path(str(args.model)).expanduser(),
        limits_from_cfg(cfg),
        policy=policy_from_cfg(cfg),
        min_training_examples=int(cfg["min_training_examples"]),
    )


def _describe(net: Node) -> Dict[str, Any]:
    levels = net.levels if isinstance(net, RetryNetwork) else None
    return {
        "kind": net.kind,
        "levels": levels,
        "stages": len(list(net.stages())),
        "parameters": sum(stage.shape.parameter_count for stage in net.stages()),
        "input_size": net.input_size,
        "output_size": net.output_size,
        "shape": net.shape.model_dump(mode="json"),
        "directory": str(net.directory.path),
    }


def _cmd_generate(args: argparse.Namespace) -> int:
    cfg = load_cfg(args.config)
    shape = NetworkShape.model_validate(read_json_obj(Path(str(args.shape)).expanduser()))
    out = Path(str(args.out)) if args.out else Path(str(cfg["model_root"])) / Path(str(args.shape)).stem
    out = out.expanduser()
    if out.exists() and any(out.iterdir()):
        _eprint(f"ERROR: {out} already exists and is not empty")
        return 2
    rng = np.random.default_rng(args.seed) if args.seed is not None else None
    if args.leaf:
        tracker = ResidencyTracker(limits_from_cfg(cfg))
        net: Node = StageNetwork.new(shape, ModelDirectory.scratch(out), tracker=tracker, rng=rng)
    else:
        levels = int(args.levels) if args.levels is not None else int(cfg["levels"])
        net = new_network(shape, levels, out, limits_from_cfg(cfg), policy=policy_from_cfg(cfg), rng=rng)
    with net:
        net.save(out)
        _print_json(_describe(net))
    return 0


def _cmd_train(args: argparse.Namespace) -> int:
    cfg = load_cfg(args.config)
    params = training_params_from_cfg(
        cfg,
        epochs=args.epochs,
        learning_rate=args.learning_rate,
        tolerance=args.tolerance,
        validation_split=args.validation_split,
        batch_size=args.batch_size,
        use_adam=False if args.sgd else None,
    )
    with _load(args, cfg) as net:
        inputs, targets = load_csv_dataset(args.data, net.input_size)
        if args.batch:
            accuracy = net.train_batch(inputs, targets, params)
        else:
            accuracy = net.train(inputs, targets, params)
        report = net.close()
    for err in report.errors:
        _eprint(f"WARNING: {err}")
    _print_json({"accuracy": accuracy, "examples": len(inputs), "kind": net.kind})
    return 0 if report.ok else 1


def _cmd_evaluate(args: argparse.Namespace) -> int:
    cfg = load_cfg(args.config)
    tolerance = float(args.tolerance) if args.tolerance is not None else float(cfg["tolerance"])
    with _load(args, cfg) as net:
        inputs, targets = load_csv_dataset(args.data, net.input_size)
        if len(targets) and len(targets[0]) != net.output_size:
            _eprint(f"ERROR: data has {len(targets[0])} targets, model outputs {net.output_size}")
            return 2
        correct = sum(outputs_match(net.predict(x), y, tolerance) for x, y in zip(inputs, targets))
    accuracy = correct / len(inputs) if inputs else 0.0
    _print_json({"accuracy": accuracy, "correct": int(correct), "examples": len(inputs), "tolerance": tolerance})
    return 0


def _cmd_predict(args: argparse.Namespace) -> int:
    cfg = load_cfg(args.config)
    try:
        x = [float(v) for v in str(args.input).split(",") if v.strip()]
    except ValueError:
        _eprint(f"ERROR: --input must be comma-separated numbers, got {args.input!r}")
        return 2
    with _load(args, cfg) as net:
        out = net.predict(x)
        payload: Dict[str, Any] = {"output": [float(v) for v in out]}
        if isinstance(net, RetryNetwork):
            payload["depth"] = net.route(x)
    _print_json(payload)
    return 0


def _cmd_inspect(args: argparse.Namespace) -> int:
    cfg = load_cfg(args.config)
    with _load(args, cfg) as net:
        _print_json(_describe(net))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="cascadenet")
    parser.add_argument("--log-level", default=None, help="Logging level (default: CASCADENET_LOG_LEVEL or WARNING)")
    parser.add_argument("--config", default=None, help="JSON config file (default: CASCADENET_CFG)")
    sub = parser.add_subparsers(dest="cmd")

    p_gen = sub.add_parser("generate", help="Create a fresh network and save it to a directory")
    p_gen.add_argument("--shape", required=True, help="shape.json describing the external network shape")
    p_gen.add_argument("--levels", type=int, default=None, help="Cascade depth (default: config 'levels')")
    p_gen.add_argument("--out", default=None, help="Model directory to create (default: <model_root>/<shape name>)")
    p_gen.add_argument("--leaf", action="store_true", help="Create a single stage instead of a cascade")
    p_gen.add_argument("--seed", type=int, default=None, help="Seed for weight initialisation")
    p_gen.set_defaults(_handler=_cmd_generate)

    p_train = sub.add_parser("train", help="Train a saved network on a CSV dataset")
    p_train.add_argument("model", help="Model directory")
    p_train.add_argument("data", help="CSV file: input columns followed by target columns")
    p_train.add_argument("--epochs", type=int, default=None)
    p_train.add_argument("--learning-rate", type=float, default=None)
    p_train.add_argument("--tolerance", type=float, default=None)
    p_train.add_argument("--validation-split", type=float, default=None)
    p_train.add_argument("--batch-size", type=int, default=None)
    p_train.add_argument("--sgd", action="store_true", help="Plain SGD instead of Adam")
    p_train.add_argument("--batch", action="store_true", help="Mini-batch training of the primary only")
    p_train.set_defaults(_handler=_cmd_train)

    p_eval = sub.add_parser("evaluate", help="Fraction of CSV examples predicted within tolerance")
    p_eval.add_argument("model", help="Model directory")
    p_eval.add_argument("data", help="CSV file: input columns followed by target columns")
    p_eval.add_argument("--tolerance", type=float, default=None)
    p_eval.set_defaults(_handler=_cmd_evaluate)

    p_pred = sub.add_parser("predict", help="Run one input through a saved network")
    p_pred.add_argument("model", help="Model directory")
    p_pred.add_argument("--input", required=True, help="Comma-separated input values, e.g. 1,2,3")
    p_pred.set_defaults(_handler=_cmd_predict)

    p_inspect = sub.add_parser("inspect", help="Print kind, shape and depth of a saved network")
    p_inspect.add_argument("model", help="Model directory")
    p_inspect.set_defaults(_handler=_cmd_inspect)

    ns = parser.parse_args(argv)
    _configure_logging(ns.log_level)

    if not hasattr(ns, "_handler"):
        parser.print_help(sys.stderr)
        return 2

    try:
        return int(ns._handler(ns))  # type: ignore[misc]
    except (CascadeError, OSError, ValueError) as exc:
        logger.debug("Command %s failed", ns.cmd, exc_info=True)
        _eprint(f"ERROR: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

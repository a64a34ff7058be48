# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""reliaprompt CLI: evaluate and improve prompts from the terminal."""
import argparse
import asyncio
import logging
import sys

from reliaprompt.errors import ReliaPromptError, get_error_message


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="reliaprompt",
        description="Measure how reliably models follow a prompt, then improve it.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress to stderr")
    sub = parser.add_subparsers(dest="command")

    # reliaprompt version
    sub.add_parser("version", help="Show version and optional dependency status")

    # reliaprompt test suite.yaml
    test_p = sub.add_parser("test", help="Run a suite's prompt against every model")
    test_p.add_argument("suite", help="YAML suite file")
    test_p.add_argument("--model", "-m", action="append", default=None,
                        help="provider:model_id (repeatable; default from RELIAPROMPT_MODELS)")
    test_p.add_argument("--runs", "-r", type=int, default=None, help="Runs per test case")
    test_p.add_argument("--judge", "-j", default=None,
                        help="provider:model_id reviewing answers for llm evaluation mode")
    test_p.add_argument("--json", action="store_true", help="Output raw JSON")

    # reliaprompt improve suite.yaml
    imp_p = sub.add_parser("improve", help="Iteratively rewrite a suite's prompt")
    imp_p.add_argument("suite", help="YAML suite file")
    imp_p.add_argument("--model", "-m", action="append", default=None,
                       help="provider:model_id (repeatable; default from RELIAPROMPT_MODELS)")
    imp_p.add_argument("--iterations", "-n", type=int, default=None, help="Max improvement iterations")
    imp_p.add_argument("--runs", "-r", type=int, default=None, help="Runs per test case")
    imp_p.add_argument("--judge", "-j", default=None,
                       help="provider:model_id reviewing answers for llm evaluation mode")
    imp_p.add_argument("--db", help="SQLite file to store prompt versions and job history")
    imp_p.add_argument("--json", action="store_true", help="Output raw JSON")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "version":
        _cmd_version()
        return
    if args.command is None:
        parser.print_help()
        return

    try:
        if args.command == "test":
            asyncio.run(_cmd_test(args))
        elif args.command == "improve":
            asyncio.run(_cmd_improve(args))
    except ReliaPromptError as e:
        print("Error: {}".format(get_error_message(e)), file=sys.stderr)
        sys.exit(1)


_RESET = "\033[0m"
_DIM = "\033[90m"
_GREEN = "\033[32m"


def _cmd_version():
    from reliaprompt import __version__

    print("reliaprompt v{}".format(__version__))
    deps = [
        ("openai", "openai", "openai"),
        ("anthropic", "anthropic", "anthropic"),
        ("aiosqlite", "aiosqlite", "aiosqlite"),
    ]
    for label, module, pkg_name in deps:
        try:
            __import__(module)
        except ImportError:
            print("  {}✘ {}{}".format(_DIM, label, _RESET))
            continue
        ver = _get_pkg_version(pkg_name)
        print("  {}✔{} {} {}{}{}".format(_GREEN, _RESET, label, _DIM, ver or "", _RESET))


def _get_pkg_version(pkg_name):
    """Get package version from importlib.metadata."""
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version(pkg_name)
    except PackageNotFoundError:
        return None


def _load_config(args):
    from reliaprompt.config import EngineConfig

    config = EngineConfig.from_env()
    if args.model:
        config.models = list(args.model)
    if args.runs is not None:
        config.runs_per_test = args.runs
    if args.judge:
        config.judge_model = args.judge
    if getattr(args, "iterations", None) is not None:
        config.max_iterations = args.iterations
    if getattr(args, "db", None):
        config.db_path = args.db
    config.__post_init__()
    return config


async def _cmd_test(args):
    from reliaprompt.engine import Engine
    from reliaprompt.evaluation.runner import format_test_report
    from reliaprompt.suite import load_suite

    suite = load_suite(args.suite)
    engine = Engine(config=_load_config(args))
    try:
        job_id = await engine.start_test_run(
            suite.prompt.content, suite.test_cases,
            expected_schema=suite.prompt.expected_schema,
            evaluation_mode=suite.prompt.evaluation_mode,
            evaluation_criteria=suite.prompt.evaluation_criteria,
        )
        await engine.wait(job_id)
        job = engine.get_test_progress(job_id)
    finally:
        await engine.close()

    if job.error:
        raise _JobFailed(job.error)
    if args.json:
        print(job.results.model_dump_json(indent=2))
    else:
        print(format_test_report(job.results))


async def _cmd_improve(args):
    from reliaprompt.engine import Engine
    from reliaprompt.evaluation.loop import format_improvement_report
    from reliaprompt.store.memory import MemoryJobStore
    from reliaprompt.suite import load_suite

    suite = load_suite(args.suite)
    config = _load_config(args)
    if args.db:
        from reliaprompt.store.sqlite_store import SQLiteJobStore
        store = SQLiteJobStore(db_path=config.db_path)
        await store.init()
    else:
        store = MemoryJobStore()

    engine = Engine(config=config, store=store)
    try:
        prompt = None
        if suite.prompt.id:
            prompt = await store.get_prompt(suite.prompt.id)
        if prompt is None:
            prompt = await store.create_prompt(suite.prompt.name, suite.prompt.content)

        job_id = await engine.start_improvement(
            prompt.id, suite.test_cases,
            evaluation_mode=suite.prompt.evaluation_mode,
            evaluation_criteria=suite.prompt.evaluation_criteria,
        )
        job = engine.get_improvement_progress(job_id)
        shown = 0
        while not job.status.is_terminal:
            if not args.json:
                shown = _print_new_log_lines(job.log, shown)
            await asyncio.sleep(0.2)
        await engine.wait(job_id)
        if not args.json:
            _print_new_log_lines(job.log, shown)
    finally:
        await engine.close()

    if args.json:
        print(job.model_dump_json(indent=2))
    else:
        print()
        print(format_improvement_report(job))
    if job.error:
        raise _JobFailed(job.error)


def _print_new_log_lines(log, shown):
    for line in log[shown:]:
        print("  {}{}{}".format(_DIM, line, _RESET), file=sys.stderr)
    return len(log)


class _JobFailed(ReliaPromptError):
    """A job finished in the failed state."""

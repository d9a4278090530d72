import argparse
import io
import sys

from matbridge.config import MAX_OUTPUT_BUFFER_SIZE, config
from matbridge.errors import MEngineError
from matbridge.libeng import load_engine_library
from matbridge.registry import default_registrar
from matbridge.utils import clamp_int, log_error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Evaluate statements read from stdin in an engine session"
    )
    parser.add_argument("--buffer-size", type=int, help="Output capture buffer size in bytes (0 disables capture)")
    parser.add_argument("--startcmd", help="Engine startup command (overrides MATBRIDGE_STARTCMD env)")
    parser.add_argument("--lib", help="Path to the engine library (overrides MATBRIDGE_LIBENG env)")
    parser.add_argument("--show-window", action="store_true", help="Keep the engine window visible where it has one")
    parser.add_argument("--log-dir", help="Directory for session event logs (overrides MATBRIDGE_LOG_DIR env)")
    return parser


def run(lines, registrar=default_registrar) -> int:
    failures = 0
    session = registrar.get_or_create()
    for line in lines:
        statement = line.strip()
        if not statement:
            continue
        try:
            session.eval_string(statement)
        except MEngineError as exc:
            failures += 1
            log_error(f"eval failed: {exc}")
            if session.closed:
                break
    return failures


def main(argv=None) -> None:
    config.load_from_env()
    args = build_parser().parse_args(argv)

    if args.buffer_size is not None:
        config.BUFFER_SIZE = clamp_int(args.buffer_size, config.BUFFER_SIZE, 0, MAX_OUTPUT_BUFFER_SIZE)
    if args.startcmd: config.STARTCMD = args.startcmd
    if args.lib: config.LIBENG_PATH = args.lib
    if args.log_dir: config.LOG_DIR = args.log_dir
    if args.show_window:
        config.HIDE_WINDOW = False

    try:
        load_engine_library(config.LIBENG_PATH)
        # Force UTF-8 input so statements with non-ASCII text survive on Windows consoles
        failures = run(io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace"))
    except MEngineError as exc:
        log_error(str(exc))
        sys.exit(2)
    finally:
        log_error("shutting down...")
        default_registrar.close()
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()

"""DarkVM entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
import time
from typing import List, Optional

from extensions import AbortSignal, DarkExtensionError, RuntimeServices, install_step_budget, load_runtime_services
from interpreter import DarkRuntimeError, ExecutionState, Interpreter, TracebackFormatter
from lexer import DarkParseError, Lexer
from parser import Parser, Program


BANNER = "\x1b[38;2;153;221;255mDarkVM\033[0m REPL. Enter instructions, blank line to close a label."


def parse_fragment(text: str, program: Program, filename: str = "<string>") -> Program:
    lexer = Lexer(text, filename)
    tokens = lexer.tokenize()
    parser = Parser(
        tokens,
        filename,
        text.splitlines(),
        start_index=len(program.instructions),
        known_labels=program.labels,
    )
    return parser.parse()


def _report_runtime_error(interpreter: Interpreter, error: DarkRuntimeError, *, as_json: bool) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(verbose: bool, services: Optional[RuntimeServices] = None) -> int:
    print(BANNER)
    had_output = False

    class _ReplSink:
        def write(self, text: str, newline: bool) -> None:
            nonlocal had_output
            had_output = not newline
            print(text, end="\n" if newline else "", flush=True)

    interpreter = Interpreter(source="", filename="<string>", verbose=verbose, services=services, output_sink=_ReplSink())
    program = Parser(Lexer("", "<string>").tokenize(), "<string>", []).parse()
    interpreter.program = program
    state = interpreter.new_state(program)
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        if had_output:
            # Unterminated print output; start the prompt on a fresh line.
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if not buffer and stripped.startswith("@"):
            buffer.append(line)
            continue
        if buffer and stripped != "":
            buffer.append(line)
            continue
        if buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
        elif stripped == "":
            continue
        else:
            source_text = line
        _run_fragment(interpreter, state, source_text)
    return 0


def _run_fragment(interpreter: Interpreter, state: ExecutionState, source_text: str) -> None:
    program = state.program
    try:
        fragment = parse_fragment(source_text, program)
    except DarkParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return
    start = len(program.instructions)
    program.extend(fragment)
    interpreter.source = source_text
    interpreter._source_lines = source_text.splitlines()
    try:
        interpreter.execute(state, start=start)
    except DarkRuntimeError as error:
        _report_runtime_error(interpreter, error, as_json=False)
    except AbortSignal as sig:
        print(f"Aborted: {sig.reason}", file=sys.stderr)
    # Keep the session usable after a fault or abort.
    state.call_stack.clear()
    state.pc = len(program.instructions)


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="DarkVM stack-based bytecode interpreter")
    parser.add_argument("program", nargs="?", help="Path to a .dark file, or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("-t", "--show-time", dest="show_time", action="store_true", help="Print the time the program took to run")
    parser.add_argument("-m", "--show-machine", dest="show_machine", action="store_true", help="Print the final machine state")
    parser.add_argument("--max-steps", dest="max_steps", type=int, default=None, help="Abort after N executed instructions")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], help="Extension .py or .darkx file (repeatable)")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.extensions)
        if args.max_steps is not None:
            install_step_budget(services, args.max_steps)
    except DarkExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        if not filename.endswith(".dark"):
            print(f"Failed to read {filename}: DarkVM programs must end in .dark", file=sys.stderr)
            return 1
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    started = time.perf_counter()
    code = 0
    try:
        interpreter.run()
    except DarkParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except AbortSignal as sig:
        print(f"Aborted: {sig.reason}", file=sys.stderr)
        code = 2
    except DarkRuntimeError as error:
        _report_runtime_error(interpreter, error, as_json=args.traceback_json)
        code = 1
    elapsed = time.perf_counter() - started

    if args.show_machine and interpreter.state is not None:
        print(interpreter.state.describe())
    if args.show_time:
        print(f"Program took {elapsed * 1000:.3f}ms")
    return code


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()

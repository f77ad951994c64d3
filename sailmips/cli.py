import argparse
import os
import sys
import tempfile

from . import assembler, validator
from .errors import AssemblerError, InputOutputError
from .parser import Loader, MIPS32_POINTER_SIZE


def default_output_path(program):
    """The input path with its extension replaced by .asm."""
    return os.path.splitext(program)[0] + ".asm"


def write_output(path, module, print_debug=False):
    """Assemble module into path.

    The text goes to a temporary file next to path that only replaces path
    once assembly succeeded, so a failed run never leaves a truncated file.
    """
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fd, temp_path = tempfile.mkstemp(prefix=".sailmips-", suffix=".asm", dir=directory)
    except OSError as e:
        raise InputOutputError(path, e) from e
    try:
        with os.fdopen(fd, "w", encoding="ascii", newline="\n") as f:
            assembler.write_program(f, module, print_debug=print_debug)
        os.replace(temp_path, path)
    except OSError as e:
        _remove_quietly(temp_path)
        raise InputOutputError(path, e) from e
    except BaseException:
        _remove_quietly(temp_path)
        raise


def _remove_quietly(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def main(argv=None):
    ap = argparse.ArgumentParser(prog="sailmips", description="Assembles SAILAR modules into MIPS32 assembly.")
    ap.add_argument("-p", "--program", required=True, help="The module containing the entry point to assemble")
    ap.add_argument("-o", "--output", help="Path to the output assembly file (default: program path with .asm)")
    ap.add_argument("--no-validate", action="store_true", help="Skip validation checks")
    ap.add_argument("--debug", action="store_true", help="Print code generation details to stderr")
    args = ap.parse_args(argv)

    output = args.output or default_output_path(args.program)
    loader = Loader(pointer_size=MIPS32_POINTER_SIZE)
    loader.print_debug = args.debug

    try:
        module = loader.load_file(args.program)
    except InputOutputError as e:
        print(f"Error: Failed to read input file: {e}", file=sys.stderr)
        sys.exit(1)
    except AssemblerError as e:
        print(f"Error in {args.program}:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        sys.exit(1)

    # Run validation unless disabled
    if not args.no_validate:
        try:
            val = validator.Validator(module)
            warnings = val.validate()
            for warning in warnings:
                print(f"Warning: {warning}", file=sys.stderr)
        except validator.ValidationError as e:
            print(f"Validation error in {args.program}:", file=sys.stderr)
            print(f"  {e}", file=sys.stderr)
            sys.exit(1)

    try:
        write_output(output, module, print_debug=args.debug)
    except InputOutputError as e:
        print(f"Error: Failed to write output file: {e}", file=sys.stderr)
        sys.exit(1)
    except AssemblerError as e:
        print(f"Error in {args.program}:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Wrote assembly to {output}")


if __name__ == "__main__":
    main()

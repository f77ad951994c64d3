"""Whole-program assembly: call-graph discovery and output of the final assembly text."""
import io
import sys
from dataclasses import dataclass, field
from typing import Dict, List

from . import ir
from .codegen import FunctionTranslator
from .codegen_utils import create_function_label
from .errors import InputOutputError, LabelCollision, MissingEntryPointFunction
from .instructions import (
    Instruction, JumpAndLink, La, Li, MarsServiceNumber, Move, Nop, Register as Reg, Syscall,
)


# The register containing the exit code once the entry point function returns
EXIT_CODE_REGISTER = Reg.V0

EXIT_CODE_MESSAGE = "exit_code_message"
EXIT_CODE_TEXT = "Exited with code "

PROGRAM_ENTRY_LABEL = "main"

RESERVED_LABELS = frozenset({PROGRAM_ENTRY_LABEL, EXIT_CODE_MESSAGE})

ENTRY_POINT_EXIT = (
    # Keep the exit code somewhere the syscalls below leave alone
    Move(Reg.S0, EXIT_CODE_REGISTER),
    # Print message
    Li(Reg.V0, MarsServiceNumber.PRINT_STRING),
    La(Reg.A0, EXIT_CODE_MESSAGE),
    Syscall(),
    # Print exit code
    Li(Reg.V0, MarsServiceNumber.PRINT_INTEGER),
    Move(Reg.A0, Reg.S0),
    Syscall(),
    # Exit the program, $a0 still holds the exit code
    Li(Reg.V0, MarsServiceNumber.EXIT2),
    Syscall(),
)


@dataclass
class Function:
    """A translated function: its label and instruction stream."""
    label: str
    instructions: List[Instruction] = field(default_factory=list)


class LabelArena:
    """Owns every generated function label for the duration of one run."""

    def __init__(self):
        self.labels: List[str] = []
        self.owners: Dict[str, ir.FunctionSymbol] = {}

    def alloc(self, symbol: ir.FunctionSymbol, label: str) -> str:
        if label in RESERVED_LABELS:
            raise LabelCollision(label, "a reserved label", symbol)
        owner = self.owners.get(label)
        if owner is not None and owner != symbol:
            raise LabelCollision(label, owner, symbol)
        self.owners[label] = symbol
        self.labels.append(label)
        return label

    def __len__(self):
        return len(self.labels)


class Lookup:
    """Run-scoped table of translated functions, in translation order."""

    def __init__(self):
        self.labels = LabelArena()
        self.functions: Dict[ir.FunctionSymbol, Function] = {}
        self.drained = False

    def insert(self, symbol: ir.FunctionSymbol, function: Function):
        if symbol in self.functions:
            raise RuntimeError(f"function {symbol} was translated twice")
        self.functions[symbol] = function

    def __contains__(self, symbol):
        return symbol in self.functions

    def __len__(self):
        return len(self.functions)

    def take(self) -> List[Function]:
        """Hand out every function exactly once, emptying the table."""
        if self.drained:
            raise RuntimeError("function table was already emitted")
        functions = list(self.functions.values())
        self.functions = {}
        self.drained = True
        return functions


def build_functions(lookup: Lookup, program: ir.Module, print_debug=False) -> ir.Function:
    """Translate every function reachable from the entry point of program.

    Uses an explicit stack rather than recursion, so deep call chains do not
    grow the Python stack. Returns the entry point function.
    """
    entry_point = program.entry_point()
    if entry_point is None:
        raise MissingEntryPointFunction(program.name)

    remaining_functions = [entry_point]
    scheduled = {entry_point.full_symbol()}

    while remaining_functions:
        function = remaining_functions.pop()
        symbol = function.full_symbol()
        label = lookup.labels.alloc(symbol, create_function_label(symbol))

        translator = FunctionTranslator(function, label)
        translator.print_debug = print_debug
        instructions = translator.translate()

        # Reversed so that the first callee is popped next
        for callee in reversed(translator.callees):
            callee_symbol = callee.full_symbol()
            if callee_symbol not in scheduled:
                scheduled.add(callee_symbol)
                remaining_functions.append(callee)

        lookup.insert(symbol, Function(label=label, instructions=instructions))
        if print_debug:
            print(f"[DEBUG] translated {symbol} as {label}", file=sys.stderr)

    return entry_point


def write_program(output, program: ir.Module, print_debug=False):
    """Assemble program and write the assembly text to the output stream.

    Nothing is written unless every reachable function translates.
    """
    lookup = Lookup()
    entry_point = build_functions(lookup, program, print_debug=print_debug)
    entry_label = create_function_label(entry_point.full_symbol())

    out = io.StringIO()
    out.write(".data\n")
    out.write(f"{EXIT_CODE_MESSAGE}: .asciiz \"{EXIT_CODE_TEXT}\"\n")
    out.write(".text\n")
    out.write(f"{PROGRAM_ENTRY_LABEL}:\n")
    out.write(f"{JumpAndLink(entry_label)}\n")
    out.write(f"{Nop()}\n")
    for instruction in ENTRY_POINT_EXIT:
        out.write(f"{instruction}\n")
    for function in lookup.take():
        out.write(f"{function.label}:\n")
        for instruction in function.instructions:
            out.write(f"{instruction}\n")

    try:
        output.write(out.getvalue())
        output.flush()
    except OSError as e:
        raise InputOutputError(getattr(output, 'name', '<output>'), e) from e


def assemble(program: ir.Module, print_debug=False) -> str:
    """Return the assembly text for program."""
    out = io.StringIO()
    write_program(out, program, print_debug=print_debug)
    return out.getvalue()

import re
import sys
from dataclasses import dataclass

from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError, UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken, VisitError

from . import ir
from .errors import InputOutputError, LoaderError


# Width of pointer-sized IR values on the target
MIPS32_POINTER_SIZE = 4


GRAMMAR = r"""
start: module_decl item*

module_decl: "module" name [version] ";"
version: "version" INT ("." INT)*

?item: entry_decl | extern_decl | func_def
entry_decl: "entry" symbol ";"
extern_decl: "extern" "func" symbol signature ";"
func_def: "func" symbol signature "{" body_item* "}"

signature: "(" [params] ")" [returns]
params: param ("," param)*
param: VREG ":" NAME
returns: "->" "(" [type_list] ")"
type_list: NAME ("," NAME)*

?body_item: block_label | instr
block_label: NAME ":"
instr: [results "="] NAME [operands] ";"
results: VREG ("," VREG)*
operands: operand ("," operand)*

?operand: VREG   -> vreg
        | INT    -> immediate
        | symbol
        | NAME   -> block_ref

symbol: "@" (NAME | STRING)
name: NAME | STRING

NAME: /[A-Za-z_][A-Za-z0-9_.]*/
VREG: /%[A-Za-z0-9_.]+/
INT: /-?(0[xX][0-9a-fA-F]+|[0-9]+)/

%import common.ESCAPED_STRING -> STRING

%ignore /[ \t\r\n\f]+/
COMMENT: /\/\/[^\n]*/
%ignore COMMENT
"""


@dataclass
class _EntryDecl:
    name: str
    line: int


@dataclass
class _BlockLabel:
    name: str
    line: int


class IRBuilder(Transformer):
    """Builds an ir.Module from the parse tree."""

    def __init__(self, pointer_size=MIPS32_POINTER_SIZE):
        self.print_debug = False
        self.pointer_size = pointer_size
        super().__init__()

    def _val(self, item):
        # Token objects have .value; strings are already str
        try:
            return item.value
        except Exception:
            return str(item)

    def _unquote(self, text):
        return re.sub(r"\\(.)", r"\1", text[1:-1])

    def _parse_number(self, num_str):
        """Parse decimal or 0x-prefixed hexadecimal, optionally negative."""
        num_str = str(num_str).strip()
        negative = num_str.startswith('-')
        if negative:
            num_str = num_str[1:]
        if num_str.lower().startswith('0x'):
            value = int(num_str, 16)
        else:
            value = int(num_str)
        return -value if negative else value

    def _resolve_type(self, token):
        typename = self._val(token)
        resolved = ir.resolve_type(typename, self.pointer_size)
        if resolved is None:
            raise LoaderError(f"unknown type '{typename}'", line=token.line, column=token.column)
        return resolved

    def start(self, items):
        module = items[0]
        for item in items[1:]:
            if isinstance(item, _EntryDecl):
                if module.entry_name is not None:
                    raise LoaderError("entry point declared more than once", line=item.line)
                module.entry_name = item.name
            elif isinstance(item, ir.Function):
                if item.name in module.functions:
                    raise LoaderError(f"function '@{item.name}' defined more than once", line=item.line)
                item.module = module
                module.functions[item.name] = item
        if module.entry_name is not None and module.entry_name not in module.functions:
            raise LoaderError(f"entry point '@{module.entry_name}' is not a function of module '{module.name}'")
        if self.print_debug:
            print(f"[DEBUG] loaded module {module.name} with {len(module.functions)} functions", file=sys.stderr)
        return module

    def module_decl(self, items):
        name, version = items
        return ir.Module(name=name, version=version or (), pointer_size=self.pointer_size)

    def version(self, items):
        components = []
        for item in items:
            value = self._parse_number(item)
            if value < 0:
                raise LoaderError(f"negative version component {value}", line=item.line, column=item.column)
            components.append(value)
        return tuple(components)

    def name(self, items):
        text = self._val(items[0])
        if items[0].type == 'STRING':
            return self._unquote(text)
        return text

    def symbol(self, items):
        return ir.SymbolRef(self.name(items))

    @v_args(meta=True)
    def entry_decl(self, meta, items):
        return _EntryDecl(name=items[0].name, line=meta.line)

    @v_args(meta=True)
    def extern_decl(self, meta, items):
        symbol, signature = items
        return ir.Function(name=symbol.name, signature=signature, blocks=None, line=meta.line)

    @v_args(meta=True)
    def func_def(self, meta, items):
        name, signature = items[0].name, items[1]
        blocks = []
        current = None
        for item in items[2:]:
            if isinstance(item, _BlockLabel):
                if any(b.name == item.name for b in blocks):
                    raise LoaderError(f"block '{item.name}' defined more than once in '@{name}'", line=item.line)
                current = ir.Block(name=item.name)
                blocks.append(current)
            else:
                if current is None:
                    # Instructions before the first label form the entry block
                    current = ir.Block(name=None)
                    blocks.append(current)
                current.instructions.append(item)

        defined = {b.name for b in blocks}
        for block in blocks:
            for instr in block.instructions:
                for target in instr.targets():
                    if target not in defined:
                        raise LoaderError(f"undefined block '{target}' in '@{name}'", line=instr.line)
        return ir.Function(name=name, signature=signature, blocks=blocks, line=meta.line)

    def signature(self, items):
        params, results = items
        return ir.Signature(params=params or [], results=results or [])

    def params(self, items):
        return list(items)

    def returns(self, items):
        return items[0] or []

    def param(self, items):
        vreg, ptype = items
        return ir.Param(name=ir.VReg(self._val(vreg)[1:]), ptype=self._resolve_type(ptype))

    def type_list(self, items):
        return [self._resolve_type(t) for t in items]

    def block_label(self, items):
        return _BlockLabel(name=self._val(items[0]), line=items[0].line)

    def instr(self, items):
        results, opcode_token, operands = items
        opcode = self._val(opcode_token)
        base, _, suffix = opcode.partition('.')
        if suffix in ir.POINTER_TYPES:
            opcode = f"{base}.{ir.resolve_type(suffix, self.pointer_size)}"
        return ir.Instruction(opcode=opcode, results=results or [], operands=operands or [], line=opcode_token.line)

    def results(self, items):
        return [ir.VReg(self._val(r)[1:]) for r in items]

    def operands(self, items):
        return list(items)

    def vreg(self, items):
        return ir.VReg(self._val(items[0])[1:])

    def immediate(self, items):
        return ir.Immediate(self._parse_number(items[0]))

    def block_ref(self, items):
        return ir.BlockRef(self._val(items[0]))


def _syntax_error(e: UnexpectedInput, text: str) -> LoaderError:
    if isinstance(e, UnexpectedEOF):
        return LoaderError("unexpected end of input")
    if isinstance(e, UnexpectedToken):
        expected = ", ".join(sorted(e.expected)) if e.expected else "nothing"
        return LoaderError(f"unexpected {e.token!r}, expected one of: {expected}", line=e.line, column=e.column)
    if isinstance(e, UnexpectedCharacters):
        return LoaderError(f"unexpected character {text[e.pos_in_stream]!r}", line=e.line, column=e.column)
    return LoaderError(str(e).splitlines()[0], line=getattr(e, 'line', None), column=getattr(e, 'column', None))


def parse(text: str, pointer_size: int = MIPS32_POINTER_SIZE, print_debug=False) -> ir.Module:
    parser = Lark(GRAMMAR, parser="lalr", propagate_positions=True)
    try:
        tree = parser.parse(text)
    except UnexpectedInput as e:
        raise _syntax_error(e, text) from e
    except LarkError as e:
        raise LoaderError(f"parse error: {e}") from e

    builder = IRBuilder(pointer_size=pointer_size)
    builder.print_debug = print_debug
    try:
        return builder.transform(tree)
    except VisitError as e:
        # Errors raised inside transformer callbacks arrive wrapped
        if isinstance(e.orig_exc, LoaderError):
            raise e.orig_exc from None
        raise


class Loader:
    """Loads textual IR modules for a target with the given pointer size."""

    def __init__(self, pointer_size: int = MIPS32_POINTER_SIZE):
        if pointer_size not in (1, 2, 4, 8):
            raise ValueError(f"unsupported pointer size {pointer_size}")
        self.pointer_size = pointer_size
        self.print_debug = False

    def load(self, text: str) -> ir.Module:
        return parse(text, pointer_size=self.pointer_size, print_debug=self.print_debug)

    def load_file(self, path) -> ir.Module:
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise InputOutputError(path, e) from e
        return self.load(text)

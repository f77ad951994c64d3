from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

from .errors import LoaderError


# Integer types and their width in bytes
INTEGER_TYPES = {
    'i8': 1, 'u8': 1,
    'i16': 2, 'u16': 2,
    'i32': 4, 'u32': 4,
    'i64': 8, 'u64': 8,
}

# Pointer-width integer types, resolved by the loader using the target pointer size
POINTER_TYPES = {'iptr': 'i', 'uptr': 'u'}

# Instructions that end a basic block
TERMINATORS = {'br', 'br_if', 'ret', 'trap'}


def resolve_type(typename: str, pointer_size: int) -> Optional[str]:
    """Map a type name to a concrete integer type, or None if it is unknown."""
    if typename in INTEGER_TYPES:
        return typename
    if typename in POINTER_TYPES:
        return f"{POINTER_TYPES[typename]}{pointer_size * 8}"
    return None


def type_size(typename: str) -> int:
    """Get size in bytes for a resolved integer type."""
    return INTEGER_TYPES[typename]


def is_signed(typename: str) -> bool:
    return typename.startswith('i')


@dataclass(frozen=True)
class FunctionSymbol:
    """Identity of a function: the defining module's name and version plus the exported name."""
    module_name: str
    version: Tuple[int, ...]
    name: str

    def __str__(self):
        version = ".".join(str(v) for v in self.version)
        return f"@{self.name} ({self.module_name} {version})"


@dataclass(frozen=True)
class VReg:
    """A virtual register, written %name in the IR."""
    name: str

    def __str__(self):
        return f"%{self.name}"


@dataclass(frozen=True)
class Immediate:
    value: int

    def __str__(self):
        return str(self.value)


@dataclass(frozen=True)
class SymbolRef:
    """Reference to a function by its exported name, written @name."""
    name: str

    def __str__(self):
        return f"@{self.name}"


@dataclass(frozen=True)
class BlockRef:
    """Reference to a basic block of the enclosing function."""
    name: str

    def __str__(self):
        return self.name


@dataclass
class Instruction:
    opcode: str  # e.g. 'add', 'load.i32'
    results: List[VReg] = field(default_factory=list)
    operands: List[Any] = field(default_factory=list)
    line: Optional[int] = None

    @property
    def base(self) -> str:
        """Opcode without its type suffix ('load.i32' -> 'load')."""
        return self.opcode.split('.', 1)[0]

    @property
    def type_suffix(self) -> Optional[str]:
        parts = self.opcode.split('.', 1)
        return parts[1] if len(parts) == 2 else None

    @property
    def is_terminator(self) -> bool:
        return self.base in TERMINATORS

    def uses(self) -> List[VReg]:
        return [op for op in self.operands if isinstance(op, VReg)]

    def targets(self) -> List[str]:
        return [op.name for op in self.operands if isinstance(op, BlockRef)]

    def __str__(self):
        text = self.opcode
        if self.operands:
            text += " " + ", ".join(str(op) for op in self.operands)
        if self.results:
            text = ", ".join(str(r) for r in self.results) + " = " + text
        return text


@dataclass
class Block:
    name: Optional[str]  # None for an unlabeled entry block
    instructions: List[Instruction] = field(default_factory=list)

    @property
    def terminator(self) -> Optional[Instruction]:
        if self.instructions and self.instructions[-1].is_terminator:
            return self.instructions[-1]
        return None


@dataclass
class Param:
    name: VReg
    ptype: str


@dataclass
class Signature:
    params: List[Param] = field(default_factory=list)
    results: List[str] = field(default_factory=list)


@dataclass
class Function:
    name: str
    signature: Signature
    blocks: Optional[List[Block]] = None  # None for functions declared without a body
    line: Optional[int] = None
    module: Optional['Module'] = field(default=None, repr=False, compare=False)

    @property
    def is_defined(self) -> bool:
        return self.blocks is not None

    def full_symbol(self) -> FunctionSymbol:
        if self.module is None:
            raise LoaderError(f"function '{self.name}' does not belong to a module", line=self.line)
        return FunctionSymbol(self.module.name, tuple(self.module.version), self.name)

    def block_index(self, name: str) -> int:
        for index, block in enumerate(self.blocks or []):
            if block.name == name:
                return index
        raise LoaderError(f"undefined block '{name}' in function '{self.name}'", line=self.line)


@dataclass
class Module:
    name: str
    version: Tuple[int, ...] = ()
    functions: Dict[str, Function] = field(default_factory=dict)
    entry_name: Optional[str] = None
    pointer_size: int = 4

    def entry_point(self) -> Optional[Function]:
        """The function where execution begins, or None if the module has none."""
        if self.entry_name is None:
            return None
        return self.resolve_function(self.entry_name)

    def resolve_function(self, name: str) -> Function:
        try:
            return self.functions[name]
        except KeyError:
            raise LoaderError(f"unresolved function symbol '@{name}' in module '{self.name}'") from None

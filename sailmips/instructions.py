"""MIPS32 instruction subset and its canonical text form."""
import enum
from dataclasses import dataclass

from .codegen_utils import format_immediate


class Register(enum.Enum):
    ZERO = "$zero"
    AT = "$at"
    V0 = "$v0"
    V1 = "$v1"
    A0 = "$a0"
    A1 = "$a1"
    A2 = "$a2"
    A3 = "$a3"
    T0 = "$t0"
    T1 = "$t1"
    T2 = "$t2"
    T3 = "$t3"
    T4 = "$t4"
    T5 = "$t5"
    T6 = "$t6"
    T7 = "$t7"
    S0 = "$s0"
    S1 = "$s1"
    S2 = "$s2"
    S3 = "$s3"
    S4 = "$s4"
    S5 = "$s5"
    S6 = "$s6"
    S7 = "$s7"
    T8 = "$t8"
    T9 = "$t9"
    K0 = "$k0"
    K1 = "$k1"
    GP = "$gp"
    SP = "$sp"
    FP = "$fp"
    RA = "$ra"

    def __str__(self):
        return self.value

    def __repr__(self):
        return self.value


# Calling convention roles (O32)
ARGUMENT_REGISTERS = (Register.A0, Register.A1, Register.A2, Register.A3)
RESULT_REGISTERS = (Register.V0, Register.V1)
CALLER_SAVED = (Register.T0, Register.T1, Register.T2, Register.T3,
                Register.T4, Register.T5, Register.T6, Register.T7)
CALLEE_SAVED = (Register.S0, Register.S1, Register.S2, Register.S3,
                Register.S4, Register.S5, Register.S6, Register.S7)
SCRATCH = (Register.T8, Register.T9)
RESERVED = (Register.ZERO, Register.AT, Register.K0, Register.K1,
            Register.GP, Register.SP, Register.FP, Register.RA)


class MarsServiceNumber(enum.IntEnum):
    """System call numbers understood by the MARS and SPIM simulators."""
    PRINT_INTEGER = 1
    PRINT_STRING = 4
    EXIT2 = 17


class Instruction:
    """Base class of every MIPS32 instruction; str() gives the assembler text."""
    pass


@dataclass(frozen=True)
class La(Instruction):
    destination: Register
    label: str

    def __str__(self):
        return f"la {self.destination},{self.label}"


@dataclass(frozen=True)
class Li(Instruction):
    destination: Register
    value: int

    def __str__(self):
        return f"li {self.destination},{format_immediate(self.value)}"


@dataclass(frozen=True)
class Move(Instruction):
    """Sets the contents of the first register to the second."""
    destination: Register
    source: Register

    def __str__(self):
        return f"move {self.destination},{self.source}"


@dataclass(frozen=True)
class Syscall(Instruction):
    """Issues a system call using the value in the `$v0` register."""

    def __str__(self):
        return "syscall"


@dataclass(frozen=True)
class Nop(Instruction):
    def __str__(self):
        return "nop"


@dataclass(frozen=True)
class Break(Instruction):
    def __str__(self):
        return "break"


REGISTER_OPS = {'addu', 'subu', 'mul', 'and', 'or', 'xor', 'nor', 'slt', 'sltu', 'sllv', 'srav', 'srlv'}
IMMEDIATE_OPS = {'addiu', 'andi', 'ori', 'xori', 'slti', 'sltiu'}
SHIFT_OPS = {'sll', 'sra', 'srl'}
LOAD_OPS = {'lw', 'lh', 'lhu', 'lb', 'lbu'}
STORE_OPS = {'sw', 'sh', 'sb'}


@dataclass(frozen=True)
class RType(Instruction):
    """Three-register ALU instruction: rd = rs op rt."""
    mnemonic: str
    rd: Register
    rs: Register
    rt: Register

    def __post_init__(self):
        assert self.mnemonic in REGISTER_OPS, self.mnemonic

    def __str__(self):
        return f"{self.mnemonic} {self.rd},{self.rs},{self.rt}"


@dataclass(frozen=True)
class IType(Instruction):
    """ALU instruction with a 16-bit immediate: rt = rs op value."""
    mnemonic: str
    rt: Register
    rs: Register
    value: int

    def __post_init__(self):
        assert self.mnemonic in IMMEDIATE_OPS, self.mnemonic

    def __str__(self):
        return f"{self.mnemonic} {self.rt},{self.rs},{format_immediate(self.value)}"


@dataclass(frozen=True)
class Shift(Instruction):
    """Shift by a constant amount: rd = rt shifted by amount."""
    mnemonic: str
    rd: Register
    rt: Register
    amount: int

    def __post_init__(self):
        assert self.mnemonic in SHIFT_OPS, self.mnemonic
        assert 0 <= self.amount < 32, self.amount

    def __str__(self):
        return f"{self.mnemonic} {self.rd},{self.rt},{format_immediate(self.amount)}"


@dataclass(frozen=True)
class Div(Instruction):
    """Divides rs by rt, leaving the quotient in LO and the remainder in HI."""
    mnemonic: str  # 'div' or 'divu'
    rs: Register
    rt: Register

    def __str__(self):
        return f"{self.mnemonic} {self.rs},{self.rt}"


@dataclass(frozen=True)
class MoveFrom(Instruction):
    mnemonic: str  # 'mfhi' or 'mflo'
    destination: Register

    def __str__(self):
        return f"{self.mnemonic} {self.destination}"


@dataclass(frozen=True)
class Load(Instruction):
    mnemonic: str
    rt: Register
    offset: int
    base: Register

    def __post_init__(self):
        assert self.mnemonic in LOAD_OPS, self.mnemonic

    def __str__(self):
        return f"{self.mnemonic} {self.rt},{format_immediate(self.offset)}({self.base})"


@dataclass(frozen=True)
class Store(Instruction):
    mnemonic: str
    rt: Register
    offset: int
    base: Register

    def __post_init__(self):
        assert self.mnemonic in STORE_OPS, self.mnemonic

    def __str__(self):
        return f"{self.mnemonic} {self.rt},{format_immediate(self.offset)}({self.base})"


@dataclass(frozen=True)
class Branch(Instruction):
    mnemonic: str  # 'beq' or 'bne'
    rs: Register
    rt: Register
    label: str

    def __str__(self):
        return f"{self.mnemonic} {self.rs},{self.rt},{self.label}"


@dataclass(frozen=True)
class BranchZero(Instruction):
    mnemonic: str  # 'beqz' or 'bnez'
    rs: Register
    label: str

    def __str__(self):
        return f"{self.mnemonic} {self.rs},{self.label}"


@dataclass(frozen=True)
class Jump(Instruction):
    label: str

    def __str__(self):
        return f"j {self.label}"


@dataclass(frozen=True)
class JumpAndLink(Instruction):
    label: str

    def __str__(self):
        return f"jal {self.label}"


@dataclass(frozen=True)
class JumpRegister(Instruction):
    source: Register

    def __str__(self):
        return f"jr {self.source}"


@dataclass(frozen=True)
class LocalLabel(Instruction):
    """A branch target inside a function body, rendered on its own line."""
    name: str

    def __str__(self):
        return f"{self.name}:"

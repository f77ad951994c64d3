"""Shared fixtures, including a small interpreter for the emitted MIPS32 subset.

The interpreter follows the MARS defaults: no branch delay slots, execution
starts at the `main` label, syscalls 1, 4, 10, 11 and 17.
"""
import re

import pytest

from sailmips.parser import Loader

MASK = 0xFFFFFFFF
DATA_BASE = 0x10010000
STACK_TOP = 0x7FFFEFFC


class SimulationError(Exception):
    pass


def _signed(value):
    value &= MASK
    return value - 0x100000000 if value & 0x80000000 else value


def _immediate(text):
    text = text.strip()
    negative = text.startswith('-')
    if negative:
        text = text[1:]
    value = int(text, 16) if text.upper().startswith('0X') else int(text)
    return -value if negative else value


class Machine:
    def __init__(self, text):
        self.registers = {"$zero": 0}
        self.memory = {}
        self.output = []
        self.exit_code = None
        self.labels = {}
        self.data_labels = {}
        self.program = []
        self.hi = 0
        self.lo = 0
        self._load(text)
        self.registers["$sp"] = STACK_TOP

    def _load(self, text):
        section = None
        data_pointer = DATA_BASE
        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue
            if line in (".data", ".text"):
                section = line
                continue
            if section == ".data":
                m = re.match(r'(\w+):\s*\.asciiz\s*"(.*)"$', line)
                if not m:
                    raise SimulationError(f"bad data line: {line}")
                self.data_labels[m.group(1)] = data_pointer
                for byte in m.group(2).encode("ascii") + b"\0":
                    self.memory[data_pointer] = byte
                    data_pointer += 1
            elif line.endswith(":"):
                label = line[:-1]
                if label in self.labels:
                    raise SimulationError(f"duplicate label {label}")
                self.labels[label] = len(self.program)
            else:
                mnemonic, _, rest = line.partition(" ")
                operands = [o.strip() for o in rest.split(",")] if rest else []
                self.program.append((mnemonic, operands))

    def get(self, reg):
        if reg not in ("$zero",) and not reg.startswith("$"):
            raise SimulationError(f"not a register: {reg}")
        return self.registers.get(reg, 0) & MASK

    def set(self, reg, value):
        if reg != "$zero":
            self.registers[reg] = value & MASK

    def _address(self, operand):
        m = re.match(r"(-?0X[0-9A-F]+|-?\d+)\((\$\w+)\)$", operand)
        if not m:
            raise SimulationError(f"bad memory operand {operand}")
        return (self.get(m.group(2)) + _immediate(m.group(1))) & MASK

    def load(self, address, size, signed):
        if address % size:
            raise SimulationError(f"unaligned access at {address:#x}")
        value = 0
        for i in range(size):
            # Little-endian, as in MARS
            value |= self.memory.get(address + i, 0) << (8 * i)
        if signed and value & (1 << (8 * size - 1)):
            value -= 1 << (8 * size)
        return value & MASK

    def store(self, address, size, value):
        if address % size:
            raise SimulationError(f"unaligned access at {address:#x}")
        for i in range(size):
            self.memory[address + i] = (value >> (8 * i)) & 0xFF

    def _string(self, address):
        chars = []
        while self.memory.get(address, 0):
            chars.append(chr(self.memory[address]))
            address += 1
        return "".join(chars)

    def _target(self, label):
        if label not in self.labels:
            raise SimulationError(f"undefined label {label}")
        return self.labels[label]

    def _syscall(self):
        service = self.get("$v0")
        a0 = self.get("$a0")
        if service == 1:
            self.output.append(str(_signed(a0)))
        elif service == 4:
            self.output.append(self._string(a0))
        elif service == 11:
            self.output.append(chr(a0 & 0xFF))
        elif service == 10:
            self.exit_code = 0
        elif service == 17:
            self.exit_code = _signed(a0)
        else:
            raise SimulationError(f"unsupported syscall {service}")

    def run(self, max_steps=200000):
        pc = self._target("main")
        for _ in range(max_steps):
            if self.exit_code is not None:
                return
            if pc >= len(self.program):
                raise SimulationError("ran off the end of the program")
            mnemonic, ops = self.program[pc]
            pc = self.step(pc, mnemonic, ops)
        raise SimulationError("step limit exceeded")

    def step(self, pc, mnemonic, ops):
        g, s = self.get, self.set
        next_pc = pc + 1
        if mnemonic == "nop":
            pass
        elif mnemonic == "syscall":
            self._syscall()
        elif mnemonic == "break":
            raise SimulationError("break")
        elif mnemonic == "li":
            s(ops[0], _immediate(ops[1]))
        elif mnemonic == "la":
            s(ops[0], self.data_labels[ops[1]])
        elif mnemonic == "move":
            s(ops[0], g(ops[1]))
        elif mnemonic in ("addu", "subu", "mul", "and", "or", "xor", "nor", "slt", "sltu", "sllv", "srav", "srlv"):
            a, b = g(ops[1]), g(ops[2])
            s(ops[0], {
                "addu": lambda: a + b,
                "subu": lambda: a - b,
                "mul": lambda: _signed(a) * _signed(b),
                "and": lambda: a & b,
                "or": lambda: a | b,
                "xor": lambda: a ^ b,
                "nor": lambda: ~(a | b),
                "slt": lambda: int(_signed(a) < _signed(b)),
                "sltu": lambda: int(a < b),
                "sllv": lambda: a << (b & 31),
                "srav": lambda: _signed(a) >> (b & 31),
                "srlv": lambda: a >> (b & 31),
            }[mnemonic]())
        elif mnemonic in ("addiu", "andi", "ori", "xori", "slti", "sltiu"):
            a, imm = g(ops[1]), _immediate(ops[2])
            s(ops[0], {
                "addiu": lambda: a + imm,
                "andi": lambda: a & (imm & 0xFFFF),
                "ori": lambda: a | (imm & 0xFFFF),
                "xori": lambda: a ^ (imm & 0xFFFF),
                "slti": lambda: int(_signed(a) < imm),
                "sltiu": lambda: int(a < (imm & MASK)),
            }[mnemonic]())
        elif mnemonic in ("sll", "sra", "srl"):
            a, amount = g(ops[1]), _immediate(ops[2])
            if mnemonic == "sll":
                s(ops[0], a << amount)
            elif mnemonic == "sra":
                s(ops[0], _signed(a) >> amount)
            else:
                s(ops[0], a >> amount)
        elif mnemonic in ("div", "divu"):
            a, b = g(ops[0]), g(ops[1])
            if mnemonic == "div":
                a, b = _signed(a), _signed(b)
            if b == 0:
                raise SimulationError("division by zero")
            quotient = abs(a) // abs(b)
            if (a < 0) != (b < 0):
                quotient = -quotient
            self.lo = quotient & MASK
            self.hi = (a - quotient * b) & MASK
        elif mnemonic == "mflo":
            s(ops[0], self.lo)
        elif mnemonic == "mfhi":
            s(ops[0], self.hi)
        elif mnemonic in ("lw", "lh", "lhu", "lb", "lbu"):
            size = {"w": 4, "h": 2, "b": 1}[mnemonic[1]]
            s(ops[0], self.load(self._address(ops[1]), size, not mnemonic.endswith("u") or mnemonic == "lw"))
        elif mnemonic in ("sw", "sh", "sb"):
            size = {"w": 4, "h": 2, "b": 1}[mnemonic[1]]
            self.store(self._address(ops[1]), size, g(ops[0]))
        elif mnemonic in ("beq", "bne"):
            equal = g(ops[0]) == g(ops[1])
            if equal == (mnemonic == "beq"):
                next_pc = self._target(ops[2])
        elif mnemonic in ("beqz", "bnez"):
            zero = g(ops[0]) == 0
            if zero == (mnemonic == "beqz"):
                next_pc = self._target(ops[1])
        elif mnemonic == "j":
            next_pc = self._target(ops[0])
        elif mnemonic == "jal":
            s("$ra", pc + 1)
            next_pc = self._target(ops[0])
        elif mnemonic == "jr":
            next_pc = g(ops[0])
        else:
            raise SimulationError(f"unknown instruction {mnemonic}")
        return next_pc


def simulate(text, max_steps=200000):
    """Run assembly text; returns (printed output, exit code)."""
    machine = Machine(text)
    machine.run(max_steps=max_steps)
    return "".join(machine.output), machine.exit_code


@pytest.fixture
def load():
    loader = Loader()

    def _load(text):
        return loader.load(text)
    return _load


@pytest.fixture
def run_program():
    return simulate

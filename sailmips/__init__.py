"""Assembles SAILAR modules into MIPS32 assembly."""

"""Utility functions for code generation."""


def format_immediate(value):
    """Render an immediate in hexadecimal: 10 -> 0XA, -16 -> -0X10."""
    if value < 0:
        return f"-0X{-value:X}"
    return f"0X{value:X}"


def fits_signed16(value):
    return -0x8000 <= value <= 0x7FFF


def fits_unsigned16(value):
    return 0 <= value <= 0xFFFF


def fits_word(value):
    """True if value can be materialized by a single li (signed or unsigned 32-bit)."""
    return -0x80000000 <= value <= 0xFFFFFFFF


def align(value, alignment):
    return (value + alignment - 1) & ~(alignment - 1)


def escape_label(text):
    """Escape text so it only contains characters valid in an assembler label.

    ASCII letters and underscores pass through, as do digits anywhere but
    the leading position. Every other character becomes 'u' followed by its
    code point in decimal, zero-padded to two digits.
    """
    escaped = []
    for index, c in enumerate(text):
        if (c.isascii() and c.isalpha()) or c == '_' or (c.isascii() and c.isdigit() and index > 0):
            escaped.append(c)
        else:
            escaped.append(f"u{ord(c):02d}")
    return "".join(escaped)


def create_function_label(symbol):
    """Build the label for a function symbol: <module>_<version components>_<name>.

    demo, (1, 0), main! -> demo_1_0_mainu33
    """
    parts = [escape_label(symbol.module_name), "_"]
    for component in symbol.version:
        parts.append(f"{component}_")
    parts.append(escape_label(symbol.name))
    return "".join(parts)


def local_label(function_label, index):
    """Label of a branch target inside a function.

    The '.' separator never appears in function labels, so local labels
    cannot collide with them.
    """
    return f"{function_label}.L{index}"

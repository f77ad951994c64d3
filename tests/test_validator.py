import os

import pytest

from sailmips.errors import LoaderError
from sailmips.validator import ValidationError, Validator


def validate(load, source):
    return Validator(load(source)).validate()


def test_valid_module_has_no_warnings(load):
    warnings = validate(load, """
        module m;
        entry @main;
        func @main() -> (i32) {
            %x = call @helper, 2;
            ret %x;
        }
        func @helper(%a: i32) -> (i32) {
            %b = add %a, %a;
            ret %b;
        }
    """)
    assert warnings == []


def test_warnings_for_unused_values_and_functions(load):
    warnings = validate(load, """
        module m;
        entry @main;
        func @main() {
            %x = const 1;
            ret;
        dead:
            ret;
        }
        func @orphan() { ret; }
    """)
    assert any("%x is never used" in w for w in warnings)
    assert any("block 'dead'" in w and "unreachable" in w for w in warnings)
    assert any("'@orphan' is never called" in w for w in warnings)


@pytest.mark.parametrize("source, message", [
    ("module m; entry @main; extern func @main();", "has no body"),
    ("module m; func @f(%a: i32, %a: i32) { ret; }", "declared twice"),
    ("module m; func @f() { %y = add %x, 1; ret; }", "used but never defined"),
    ("module m; func @f() -> (i32) { %x = const 1; }", "without returning a value"),
    ("module m; func @f() -> (i32) { ret; }", "which returns 1"),
    ("module m; func @f() { call @g, 1; ret; } func @g() { ret; }", "takes 0 argument(s) but 1 given"),
    ("module m; func @f() { %a, %b = call @g; ret; } func @g() -> (i32) { ret 1; }", "returns 1 value(s)"),
    ("module m; func @f() { call @nowhere; ret; }", "undefined function '@nowhere'"),
    ("module m; func @f() { call 1; ret; }", "must be a function symbol"),
    ("module m; func @f() { br 1; }", "needs block targets"),
])
def test_errors(load, source, message):
    with pytest.raises(ValidationError) as exc:
        validate(load, source)
    assert any(message in error for error in exc.value.errors)


def test_all_errors_are_reported(load):
    with pytest.raises(ValidationError) as exc:
        validate(load, """
            module m;
            func @f() -> (i32) {
                %y = add %x, 1;
                call @nowhere;
            }
        """)
    assert len(exc.value.errors) == 3
    assert str(exc.value).startswith("3 errors:")


def test_validation_error_is_a_loader_error(load):
    with pytest.raises(LoaderError):
        validate(load, "module m; func @f() { %y = copy %x; ret; }")


def test_examples_validate_cleanly(load):
    path = os.path.join(os.path.dirname(__file__), "..", "examples", "factorial.sail")
    with open(path) as f:
        assert validate(load, f.read()) == []

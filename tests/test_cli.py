import pytest

from sailmips import cli

PROGRAM = """
module demo version 1.0;
entry @"main!";
func @"main!"() -> (i32) {
    %code = const 42;
    ret %code;
}
"""


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return path


def run(argv):
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return exc.value.code


def test_default_output_path():
    assert cli.default_output_path("dir/prog.sail") == "dir/prog.asm"
    assert cli.default_output_path("prog") == "prog.asm"


def test_writes_next_to_the_program(tmp_path, capsys):
    program = write(tmp_path, "prog.sail", PROGRAM)
    cli.main(["-p", str(program)])
    output = tmp_path / "prog.asm"
    text = output.read_text()
    assert "jal demo_1_0_mainu33" in text
    assert f"Wrote assembly to {output}" in capsys.readouterr().out


def test_explicit_output_path(tmp_path):
    program = write(tmp_path, "prog.sail", PROGRAM)
    output = tmp_path / "out.s"
    cli.main(["--program", str(program), "-o", str(output)])
    assert output.read_text().startswith(".data\n")
    assert not (tmp_path / "prog.asm").exists()


def test_missing_entry_point_leaves_no_output(tmp_path, capsys):
    program = write(tmp_path, "lib.sail", "module lib; func @f() { ret; }")
    assert run(["-p", str(program)]) == 1
    assert sorted(p.name for p in tmp_path.iterdir()) == ["lib.sail"]
    assert "entry point" in capsys.readouterr().err


def test_failed_run_keeps_previous_output(tmp_path):
    program = write(tmp_path, "prog.sail", """
        module m;
        entry @main;
        func @main() { %x = frob 1; ret; }
    """)
    output = write(tmp_path, "prog.asm", "previous")
    assert run(["-p", str(program), "--no-validate"]) == 1
    assert output.read_text() == "previous"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["prog.asm", "prog.sail"]


def test_validation_errors(tmp_path, capsys):
    program = write(tmp_path, "bad.sail", "module m; entry @main; func @main() { %y = copy %x; ret; }")
    assert run(["-p", str(program)]) == 1
    assert "Validation error" in capsys.readouterr().err
    assert not (tmp_path / "bad.asm").exists()


def test_warnings_do_not_stop_assembly(tmp_path, capsys):
    program = write(tmp_path, "prog.sail", PROGRAM + "func @orphan() { ret; }\n")
    cli.main(["-p", str(program)])
    assert "Warning: function '@orphan' is never called" in capsys.readouterr().err
    assert (tmp_path / "prog.asm").exists()


def test_syntax_error(tmp_path, capsys):
    program = write(tmp_path, "prog.sail", "module m;\nfunc @f( {")
    assert run(["-p", str(program)]) == 1
    assert "line 2" in capsys.readouterr().err


def test_missing_input(tmp_path, capsys):
    assert run(["-p", str(tmp_path / "missing.sail")]) == 1
    assert "Failed to read input file" in capsys.readouterr().err


def test_program_is_required(capsys):
    assert run([]) == 2


def test_debug_flag_reports_loading(tmp_path, capsys):
    program = write(tmp_path, "prog.sail", PROGRAM)
    cli.main(["-p", str(program), "--debug"])
    err = capsys.readouterr().err
    assert "[DEBUG] loaded module demo" in err
    assert "[DEBUG] translated" in err

import io

import pytest

from conftest import CollectingSink, make_interpreter, run_source
from extensions import AbortSignal, ExtensionAPI, build_default_services, install_step_budget
from interpreter import (
    ERR_DIVISION_BY_ZERO,
    ERR_EXTENSION,
    ERR_INVALID_JUMP,
    ERR_IO,
    ERR_STACK_UNDERFLOW,
    ERR_TYPE,
    ERR_UNDEFINED_LABEL,
    ERR_UNDEFINED_VARIABLE,
    STATUS_ABORTED,
    STATUS_FAULTED,
    STATUS_HALTED,
    TYPE_ANY,
    TYPE_BOOL,
    TYPE_FLOAT,
    TYPE_INT,
    TYPE_VOID,
    DarkRuntimeError,
    Interpreter,
    Scope,
    TracebackFormatter,
    Value,
)


def run_fault(source: str):
    interpreter, sink = make_interpreter(source)
    with pytest.raises(DarkRuntimeError) as excinfo:
        interpreter.run()
    assert interpreter.state.status == STATUS_FAULTED
    assert interpreter.state.fault is excinfo.value
    return excinfo.value, sink


# ---- arithmetic ----


@pytest.mark.parametrize(
    "a,b,expected",
    [(7, 2, 3), (-7, 2, -3), (7, -2, -3), (-7, -2, 3), (6, 3, 2)],
)
def test_integer_division_truncates(a, b, expected):
    state, _ = run_source(f"push {a}\npush {b}\ndiv")
    assert state.last_value == Value(TYPE_INT, expected)


def test_float_division_is_real():
    state, _ = run_source("push 7.0\npush 2.0\ndiv")
    assert state.last_value == Value(TYPE_FLOAT, 3.5)


def test_mixed_operands_promote_to_float():
    state, _ = run_source("add 1 2.5")
    assert state.last_value == Value(TYPE_FLOAT, 3.5)


def test_integer_mod_follows_dividend_sign():
    state, _ = run_source("mod -7 2")
    assert state.last_value == Value(TYPE_INT, -1)
    state, _ = run_source("mod 7 -2")
    assert state.last_value == Value(TYPE_INT, 1)


def test_stack_arithmetic_consumes_operands_and_does_not_push():
    state, _ = run_source("push 1\npush 2\nadd")
    assert state.last_value == Value(TYPE_INT, 3)
    assert state.operand_stack == []


def test_stack_operand_order_is_push_order():
    state, _ = run_source("push 10\npush 4\nsub")
    assert state.last_value == Value(TYPE_INT, 6)


def test_pure_expression_round_trips_through_stack():
    direct, _ = run_source("add 1 2")
    pushed, _ = run_source("push add 1 2\npop")
    assert direct.last_value == pushed.last_value
    assert pushed.operand_stack == []


def test_nested_arguments_evaluate_left_to_right():
    state, sink = run_source("push 3\npush 5\nprintn sub pop pop")
    # First pop yields 5 (left), second yields 3 (right).
    assert sink.text == "2\n"
    assert state.operand_stack == []


@pytest.mark.parametrize(
    "source,expected",
    [
        ("lt 1 5", True),
        ("gt 1 5", False),
        ("lte 5 5", True),
        ("gte 4 5", False),
        ("lt 1 2.5", True),
        ("eq 1 5", False),
        ("neq 5 5", False),
        ('eq "1" 1', False),
        ("eq 1 1.0", False),
        ('eq "a" "a"', True),
        ("eq true true", True),
    ],
)
def test_comparisons(source, expected):
    state, _ = run_source(source)
    assert state.last_value == Value(TYPE_BOOL, expected)


def test_comparisons_leave_stack_untouched():
    state, _ = run_source("push 9\neq 1 1")
    assert state.operand_stack == [Value(TYPE_INT, 9)]


def test_division_by_zero_faults():
    error, _ = run_fault("push 1\npush 0\ndiv")
    assert error.kind == ERR_DIVISION_BY_ZERO
    assert error.index == 2
    error, _ = run_fault("mod 1.5 0.0")
    assert error.kind == ERR_DIVISION_BY_ZERO


def test_arithmetic_rejects_non_numbers():
    error, _ = run_fault('add "a" 1')
    assert error.kind == ERR_TYPE
    error, _ = run_fault("lt true 1")
    assert error.kind == ERR_TYPE


def test_operands_may_not_be_void():
    error, _ = run_fault("eq void 1")
    assert error.kind == ERR_TYPE


# ---- values ----


def test_any_wraps_void_and_renders_inner_value():
    state, sink = run_source("push any\nprintn pop")
    assert sink.text == "void\n"
    assert state.last_value.type == TYPE_VOID


def test_void_is_not_storable():
    for source in ("push void", "set x void", "printn void", "@f a\nend\ncall f void"):
        error, _ = run_fault(source)
        assert error.kind == ERR_TYPE


def test_value_rendering():
    _, sink = run_source('printn 2.0\nprintn 3.25\nprintn -4\nprintn false\nprint "a"\nprintn "b"')
    assert sink.text == "2\n3.25\n-4\nfalse\nab\n"


def test_value_unwrap_and_describe():
    wrapped = Value(TYPE_ANY, Value(TYPE_INT, 4))
    assert wrapped.unwrap() == Value(TYPE_INT, 4)
    assert wrapped.render() == "4"
    assert Value(TYPE_INT, 4).describe() == "Int:4"


def test_small_floats_render_without_exponent():
    _, sink = run_source("printn 0.0000001\nprintn div 1.0 3\nprintn -0.00025")
    assert sink.text == "0.0000001\n0.3333333333333333\n-0.00025\n"


def test_large_ints_render_in_full():
    # 2 ** 16384 has 4933 decimal digits.
    source = "set n 2\n" + "set n mul n n\n" * 14 + "printn n"
    state, sink = run_source(source)
    text = sink.text.rstrip("\n")
    assert state.status == STATUS_HALTED
    assert len(text) == 4933
    assert text.startswith("1")
    assert text.endswith(str(pow(2, 16384, 10**12)).zfill(12))


def test_large_int_describe_is_truncated():
    assert Value(TYPE_INT, 10**5000).describe() == "Int:1" + "0" * 76 + "..."


def test_int_too_large_for_float_promotion():
    source = "set n 2\n" + "set n mul n n\n" * 11 + "printn add n 0.5"
    error, sink = run_fault(source)
    assert error.kind == ERR_TYPE
    assert error.index == 12
    assert sink.text == ""


# ---- operand stack ----


def test_pop_and_peek_on_empty_stack():
    error, _ = run_fault("pop")
    assert error.kind == ERR_STACK_UNDERFLOW
    error, _ = run_fault("peek")
    assert error.kind == ERR_STACK_UNDERFLOW


def test_peek_does_not_remove():
    state, _ = run_source("push 1\npeek")
    assert state.last_value == Value(TYPE_INT, 1)
    assert state.operand_stack == [Value(TYPE_INT, 1)]


def test_nested_underflow_reports_top_level_index():
    error, _ = run_fault("push 1\npop\npush pop")
    assert error.kind == ERR_STACK_UNDERFLOW
    assert error.index == 2
    assert error.location.column == 6


# ---- jumps ----


def test_jmpt_transfers_and_keeps_condition():
    state, sink = run_source('push true\njmpt 3\nprintn "skipped"\nprintn "landed"')
    assert sink.text == "landed\n"
    assert state.operand_stack == [Value(TYPE_BOOL, True)]
    assert state.status == STATUS_HALTED


def test_jmpt_out_of_bounds_faults():
    error, sink = run_fault('push true\njmpt 4\nprintn "x"')
    assert error.kind == ERR_INVALID_JUMP
    assert error.index == 1
    assert sink.text == ""


def test_jmpf_falls_through_on_true():
    _, sink = run_source('push true\njmpf 3\nprintn "next"\nprintn "end"')
    assert sink.text == "next\nend\n"


def test_conditional_jump_not_taken_ignores_bounds():
    _, sink = run_source('push false\njmpt 100\nprintn "ok"')
    assert sink.text == "ok\n"


def test_conditional_jump_requires_bool():
    error, _ = run_fault("push 1\njmpt 0")
    assert error.kind == ERR_TYPE
    error, _ = run_fault("jmpf 0")
    assert error.kind == ERR_STACK_UNDERFLOW


@pytest.mark.parametrize(
    "opcode,target,condition,taken",
    [
        ("jmpt", 3, "true", True),
        ("jmpt", 3, "false", False),
        ("jmpf", 3, "false", True),
        ("jmpf", 3, "true", False),
        ("rjmpt", 2, "true", True),
        ("rjmpt", 2, "false", False),
        ("rjmpf", 2, "false", True),
        ("rjmpf", 2, "true", False),
    ],
)
def test_conditional_jump_family(opcode, target, condition, taken):
    state, sink = run_source(f'push {condition}\n{opcode} {target}\nprintn "fell"\nprintn "jumped"')
    assert sink.text == ("jumped\n" if taken else "fell\njumped\n")
    assert state.operand_stack == [Value(TYPE_BOOL, condition == "true")]


def test_relative_jumps():
    _, sink = run_source('rjmp 2\nprintn "a"\nprintn "b"')
    assert sink.text == "b\n"
    _, sink = run_source('push false\nrjmpf 2\nprintn "a"\nprintn "b"')
    assert sink.text == "b\n"
    error, _ = run_fault("rjmp -1")
    assert error.kind == ERR_INVALID_JUMP


def test_jump_target_must_be_int():
    error, _ = run_fault("jmp 1.0")
    assert error.kind == ERR_TYPE


def test_countdown_loop():
    source = "\n".join(["set n 3", "printn n", "set n sub n 1", "push gt n 0", "jmpt 1"])
    state, sink = run_source(source)
    assert sink.text == "3\n2\n1\n"
    assert state.operand_stack[-1] == Value(TYPE_BOOL, False)


# ---- labels and scoping ----


def test_label_body_is_skipped_until_called():
    _, sink = run_source('@hello\n  printn "hi"\nend\nprintn "top"\ncall hello\nprintn "back"')
    assert sink.text == "top\nhi\nback\n"


def test_parameters_bind_positionally_and_extra_args_are_ignored():
    _, sink = run_source("@pair a b\n  printn a\n  printn b\nend\ncall pair 1 2 3")
    assert sink.text == "1\n2\n"


def test_missing_arguments_stay_unbound():
    error, sink = run_fault("@pair a b\n  printn a\n  printn b\nend\ncall pair 1")
    assert sink.text == "1\n"
    assert error.kind == ERR_UNDEFINED_VARIABLE
    assert error.index == 2


def test_nested_label_reads_enclosing_activation():
    source = "\n".join(
        [
            "@outer",
            "  set x 10",
            "  @inner",
            "    printn x",
            "    set y 5",
            "  end",
            "  call inner",
            "  printn y",
            "end",
            "call outer",
        ]
    )
    error, sink = run_fault(source)
    assert sink.text == "10\n"
    assert error.kind == ERR_UNDEFINED_VARIABLE
    assert error.index == 7


def test_scoping_is_static_not_dynamic():
    source = "\n".join(
        [
            "@show",
            "  printn v",
            "end",
            "@caller",
            '  set v "caller"',
            "  call show",
            "end",
            "call caller",
        ]
    )
    error, _ = run_fault(source)
    assert error.kind == ERR_UNDEFINED_VARIABLE
    _, sink = run_source('set v "root"\n' + source)
    assert sink.text == "root\n"


def test_set_shadows_instead_of_mutating_ancestor():
    _, sink = run_source("set x 1\n@f\n  set x 2\n  printn x\nend\ncall f\nprintn x")
    assert sink.text == "2\n1\n"


def test_nested_label_called_outside_its_parent_uses_template():
    source = "\n".join(["set g 1", "@outer", "  @inner", "    printn g", "  end", "end", "call inner"])
    _, sink = run_source(source)
    assert sink.text == "1\n"


def test_recursion_keeps_frames_separate():
    source = "\n".join(
        [
            "@fact n",
            "  push lte n 1",
            "  rjmpf 4",
            "  pop",
            "  push 1",
            "  rjmp 4",
            "  pop",
            "  call fact sub n 1",
            "  push mul n pop",
            "end",
            "call fact 6",
            "printn pop",
        ]
    )
    state, sink = run_source(source)
    assert sink.text == "720\n"
    assert state.operand_stack == []
    assert state.call_stack == []


def test_undefined_label():
    error, _ = run_fault("call nowhere")
    assert error.kind == ERR_UNDEFINED_LABEL


def test_end_outside_call_underflows():
    error, _ = run_fault("@f\nend\njmp 1")
    assert error.kind == ERR_STACK_UNDERFLOW
    assert error.index == 1


def test_scope_lookup_walks_parents():
    root = Scope(name="root")
    child = Scope(parent=root, name="child")
    root.set("a", Value(TYPE_INT, 1))
    child.set("b", Value(TYPE_INT, 2))
    assert child.get("a") == Value(TYPE_INT, 1)
    with pytest.raises(DarkRuntimeError) as excinfo:
        root.get("b")
    assert excinfo.value.kind == ERR_UNDEFINED_VARIABLE


# ---- runs and host policy ----


def test_rerun_is_idempotent():
    source = 'set n 2\n@f a\n  printn add a n\nend\ncall f 1\npush "x"'
    interpreter, sink = make_interpreter(source)
    first = interpreter.run()
    first_output = sink.text
    second = interpreter.run()
    assert sink.text == first_output * 2
    assert first.operand_stack == second.operand_stack
    assert first.status == second.status == STATUS_HALTED
    assert first.root.snapshot() == second.root.snapshot()


def test_closed_stream_becomes_io_error():
    from interpreter import StreamSink

    stream = io.StringIO()
    stream.close()
    interpreter = Interpreter(source='printn "x"', output_sink=StreamSink(stream))
    with pytest.raises(DarkRuntimeError) as excinfo:
        interpreter.run()
    assert excinfo.value.kind == ERR_IO


def test_step_budget_aborts():
    services = build_default_services()
    install_step_budget(services, 10)
    interpreter = Interpreter(source="jmp 0", output_sink=CollectingSink(), services=services)
    with pytest.raises(AbortSignal):
        interpreter.run()
    assert interpreter.state.status == STATUS_ABORTED
    assert interpreter.state.steps == 10


def test_hooks_observe_calls_and_returns():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []
    ext.on_event("before_call", lambda interp, name, args, state: seen.append(("call", name, len(args))))
    ext.on_event("after_return", lambda interp, name, state: seen.append(("return", name)))
    run_source("@f a\nend\ncall f 1\ncall f 1 2", services=services)
    assert seen == [("call", "f", 1), ("return", "f"), ("call", "f", 2), ("return", "f")]


def test_failing_hook_becomes_extension_error():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="broken")

    @ext.on_event("before_instruction")
    def explode(interp, instruction, state):
        raise RuntimeError("boom")

    interpreter = Interpreter(source="push 1", services=services, output_sink=CollectingSink())
    with pytest.raises(DarkRuntimeError) as excinfo:
        interpreter.run()
    assert excinfo.value.kind == ERR_EXTENSION


def test_state_log_and_io_log():
    interpreter, _ = make_interpreter('set x 1\nprintn "hi"', verbose=True)
    interpreter.run()
    entries = interpreter.logger.entries
    assert [e.state_id for e in entries] == ["s_000000", "s_000001", "s_000002"]
    assert entries[2].env_snapshot == {"x": "Int:1"}
    assert entries[1].rewrite_record["rule"] == "set"
    assert interpreter.io_log == [{"event": "PRINTN", "text": "hi", "newline": True}]


def test_traceback_text_and_json():
    import json

    source = "@f\n  printn missing\nend\ncall f"
    interpreter, _ = make_interpreter(source)
    with pytest.raises(DarkRuntimeError) as excinfo:
        interpreter.run()
    formatter = TracebackFormatter(interpreter)
    text = formatter.format_text(excinfo.value, verbose=False)
    assert "in <top-level>" in text
    assert "in @f" in text
    assert "printn missing" in text
    assert text.rstrip().endswith("DarkRuntimeError[UndefinedVariable]: Undefined variable 'missing' (instruction 1)")
    data = json.loads(formatter.to_json(excinfo.value))
    assert data["error"]["kind"] == ERR_UNDEFINED_VARIABLE
    assert data["error"]["instruction_index"] == 1
    assert [frame["name"] for frame in data["traceback"]] == ["<top-level>", "@f"]

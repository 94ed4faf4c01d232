from concurrent.futures import ThreadPoolExecutor

import pytest

from llmgateway.costcel import CostExpressionError, evaluate_program, new_program

_EXPR = "model == 'cool_model' ?  input_tokens * output_tokens : total_tokens"


def test_invalid():
    with pytest.raises(CostExpressionError, match="cannot compile"):
        new_program("1 +")


def test_int():
    assert evaluate_program(new_program("1 + 1"), "", "", 1, 1, 1) == 2


def test_uint():
    assert evaluate_program(new_program("uint(1) + uint(1)"), "", "", 0, 0, 0) == 2


def test_variables():
    prog = new_program(_EXPR)
    assert evaluate_program(prog, "cool_model", "cool_backend", 100, 2, 3) == 200
    assert evaluate_program(prog, "not_cool_model", "cool_backend", 100, 2, 3) == 3


def test_uint_overflow_at_compile():
    with pytest.raises(CostExpressionError) as info:
        new_program("uint(1)-uint(1200)")
    assert (
        "failed to evaluate CEL expression: failed to evaluate CEL expression: unsigned integer overflow"
        in str(info.value)
    )


def test_undeclared_variable():
    with pytest.raises(CostExpressionError, match="undeclared"):
        new_program("foo + 1")


def test_non_integer_result():
    with pytest.raises(CostExpressionError, match="not an integer"):
        new_program("model == 'x'")


def test_concurrent_compile():
    with ThreadPoolExecutor(8) as pool:
        progs = list(pool.map(lambda _: new_program(_EXPR), range(100)))
    assert all(evaluate_program(p, "cool_model", "b", 100, 2, 3) == 200 for p in progs)


def test_signed_negative():
    prog = new_program("int(input_tokens) - int(output_tokens)")
    with pytest.raises(CostExpressionError, match=r"CEL expression result is negative \(-1900\)"):
        evaluate_program(prog, "cool_model", "cool_backend", 100, 2000, 3)


def test_unsigned_overflow():
    prog = new_program("input_tokens - output_tokens")
    with pytest.raises(
        CostExpressionError, match="failed to evaluate CEL expression: unsigned integer overflow"
    ):
        evaluate_program(prog, "cool_model", "cool_backend", 100, 2000, 3)


def test_concurrent_evaluate():
    prog = new_program(_EXPR)
    with ThreadPoolExecutor(8) as pool:
        results = list(
            pool.map(lambda _: evaluate_program(prog, "cool_model", "cool_backend", 100, 2, 3), range(100))
        )
    assert results == [200] * 100
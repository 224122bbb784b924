import pytest

from balance import BalanceInputs, compute_balance


def test_compute_balance_example() -> None:
    inputs = BalanceInputs(
        total_expenses=500,
        total_received_income=10_000,
        total_transfers_in=0,
        total_transfers_out=200,
    )
    assert compute_balance(inputs) == 9_300


@pytest.mark.parametrize(
    "expenses,income,transfers_in,transfers_out,expected",
    [
        (0, 0, 0, 0, 0),
        (3_000, 0, 0, 0, -3_000),
        (0, 0, 2_500, 0, 2_500),
        (1, 1, 1, 1, 0),
        (10**12, 10**12 + 7, 0, 0, 7),
    ],
)
def test_compute_balance_is_exact_integer_arithmetic(
    expenses, income, transfers_in, transfers_out, expected
) -> None:
    inputs = BalanceInputs(expenses, income, transfers_in, transfers_out)
    assert compute_balance(inputs) == expected
    assert compute_balance(inputs) == compute_balance(inputs)


@pytest.mark.parametrize("bad", [1.5, "100", None, True])
def test_balance_inputs_reject_non_integer_cents(bad) -> None:
    with pytest.raises(TypeError):
        BalanceInputs(
            total_expenses=bad,
            total_received_income=0,
            total_transfers_in=0,
            total_transfers_out=0,
        )

from dataclasses import dataclass


@dataclass(frozen=True)
class BalanceInputs:
    total_expenses: int
    total_received_income: int
    total_transfers_in: int
    total_transfers_out: int

    def __post_init__(self) -> None:
        for name, value in vars(self).items():
            if not isinstance(value, int) or isinstance(value, bool):
                raise TypeError(f"{name} must be integer cents, got {value!r}")


def compute_balance(inputs: BalanceInputs) -> int:
    """Signed account balance in cents.

    ``total_received_income`` must only include income that has been received;
    ``total_expenses`` includes every entry charged to the account, paid or not.
    """
    return (
        inputs.total_received_income
        + inputs.total_transfers_in
        - inputs.total_transfers_out
        - inputs.total_expenses
    )

from typing import Any, Sequence

from chaindeploy.utils import is_zero_address


def _abort_unless_confirmed(question: str) -> None:
    """Exits the process when the operator answers 'n'."""
    answer = input(f"{question} Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting deployment!")
        exit(-1)


def _confirm_deployment(contract_name: str) -> None:
    _abort_unless_confirmed(f"Deploy {contract_name}")


def _continue() -> None:
    _abort_unless_confirmed("Continue")


def _contains_zero_address(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_contains_zero_address(v) for v in value)
    return is_zero_address(value)


def _confirm_resolution(
    resolved_args: Sequence[Any], contract_name: str, names: Sequence[str] = ()
) -> None:
    """
    Prints the resolved constructor arguments of a contract and asks the operator
    to confirm them, with a second confirmation when any of them is the zero address.
    """
    if len(resolved_args) == 0:
        print(f"\n(i) No constructor parameters for {contract_name}")
        _confirm_deployment(contract_name)
        return

    print(f"\nConstructor parameters for {contract_name}")
    for position, resolved_value in enumerate(resolved_args):
        name = names[position] if position < len(names) else f"[{position}]"
        print(f"\t{name}={resolved_value}")
    _confirm_deployment(contract_name)
    if _contains_zero_address(resolved_args):
        _abort_unless_confirmed("Zero address detected for a deployment parameter; continue")

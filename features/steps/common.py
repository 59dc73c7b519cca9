import typing
from decimal import Decimal

from behave import given, then, use_step_matcher

# Use regular expressions
use_step_matcher("re")


@given(r"(?P<input_type>[a-zA-Z0-9]+) (?P<input_value>\S+)")
def given_input(context: typing.Any, input_type: str, input_value: str):
    context.input = parse_value(input_type, input_value)


@then(r"the result should be (?P<expected_type>[a-zA-Z0-9]+) (?P<expected_value>\S+)")
def then_result(context: typing.Any, expected_type: str, expected_value: str):
    expected_val = parse_value(expected_type, expected_value)
    assert context.output == expected_val, (
        "Expected " + str(expected_value) + " but got " + str(context.output)
    )


@then(r"it should fail")
def then_fail(context: typing.Any):
    assert isinstance(context.output, Exception), (
        "Expected a failure but got " + str(context.output)
    )


def parse_value(input_type: str, input_value: str) -> typing.Any:
    if input_type == "bool":
        return parse_bool(input_value)
    elif input_type == "u64":
        return int(input_value)
    elif input_type == "bytes":
        return parse_hex(input_value)
    elif input_type == "decimal":
        return Decimal(input_value)
    elif input_type == "string":
        return parse_string(input_value)
    raise Exception("Unrecognized input type")


def parse_hex(input_value: str):
    if input_value.startswith("0x"):
        input_value = input_value[2:]
    return bytes.fromhex(input_value)


def parse_bool(input_value: str):
    return input_value == "true"


def parse_string(input_value: str):
    return input_value.strip('"')

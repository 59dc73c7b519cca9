import typing

from behave import given, then, use_step_matcher, when
from solders.pubkey import Pubkey

from spl_delegate.token_client import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    get_associated_token_address,
)

# Use regular expressions
use_step_matcher("re")

PROGRAMS = {"token": TOKEN_PROGRAM_ID, "token-2022": TOKEN_2022_PROGRAM_ID}


@given(r"owner (?P<owner>\S+) and mint (?P<mint>\S+)")
def given_owner_and_mint(context: typing.Any, owner: str, mint: str):
    context.owner = Pubkey.from_string(owner)
    context.mint = Pubkey.from_string(mint)


@given(r"public key bytes (?P<value>\S+)")
def given_public_key_bytes(context: typing.Any, value: str):
    context.input = Pubkey(bytes.fromhex(value[2:] if value.startswith("0x") else value))


@when(r"I parse the public key")
def when_parse_public_key(context: typing.Any):
    try:
        context.output = Pubkey.from_string(context.input)
    except ValueError as e:
        context.output = e


@when(r"I convert the result to a string")
def when_result_to_string(context: typing.Any):
    context.output = str(context.output)


@when(r"I check whether the public key is on the curve")
def when_is_on_curve(context: typing.Any):
    context.output = context.input.is_on_curve()


@when(r"I derive the associated token address for (?P<program>token|token-2022)")
def when_derive_associated_address(context: typing.Any, program: str):
    context.program_id = PROGRAMS[program]
    context.output = get_associated_token_address(
        context.owner, context.mint, context.program_id
    )


@then(r"the derived address should be off the curve")
def then_off_curve(context: typing.Any):
    assert not context.output.is_on_curve(), f"{context.output} is on the curve"


@then(r"the derived address should differ from the (?P<program>token|token-2022) address")
def then_differs(context: typing.Any, program: str):
    other = get_associated_token_address(context.owner, context.mint, PROGRAMS[program])
    assert context.output != other, f"{context.output} equals {other}"


@then(r"deriving it again should give the same address")
def then_deterministic(context: typing.Any):
    again = get_associated_token_address(
        context.owner, context.mint, context.program_id
    )
    assert context.output == again, f"{context.output} differs from {again}"

import typing

from behave import when, use_step_matcher

from spl_delegate.delegation import format_units, to_base_units

# Use regular expressions
use_step_matcher("re")


@when(r"I scale it to base units with (?P<decimals>[0-9]+) decimals")
def when_scale(context: typing.Any, decimals: str):
    try:
        context.output = to_base_units(context.input, int(decimals))
    except ValueError as e:
        context.output = e


@when(r"I format it with (?P<decimals>[0-9]+) decimals")
def when_format(context: typing.Any, decimals: str):
    context.output = format_units(context.input, int(decimals))

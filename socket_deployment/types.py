import click
from eth_utils import is_hex


class MinInt(click.ParamType):
    name = "minint"

    def __init__(self, min_value):
        self.min_value = min_value

    def convert(self, value, param, ctx):
        try:
            ivalue = int(value)
        except ValueError:
            self.fail(f"{value} is not a valid integer", param, ctx)
        if ivalue < self.min_value:
            self.fail(
                f"{value} is less than the minimum allowed value of {self.min_value}", param, ctx
            )
        return ivalue


class TransactionHash(click.ParamType):
    name = "tx_hash"

    def convert(self, value, param, ctx):
        if not is_hex(value) or len(value.removeprefix("0x")) != 64:
            self.fail(f"{value} is not a valid transaction hash", param, ctx)
        return "0x" + value.removeprefix("0x").lower()

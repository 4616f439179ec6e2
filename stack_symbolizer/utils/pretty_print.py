#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

from collections import OrderedDict
from enum import Enum
from typing import List, NamedTuple, Sequence


"""
    Pretty print a title in an ASCII rectangle.

    :param header_text: The title.
"""


def pretty_print_header(header_text: str):

    max_text_length = max(len(header_text), 72)

    print()

    print("+-%s-+" % ("-" * max_text_length))

    print("| %s |" % header_text.ljust(max_text_length))

    print("+-%s-+" % ("-" * max_text_length))


"""
    Turn a record (a NamedTuple) in a dict of human-readable key-value
    pairs, for displayal in ASCII tables

    :param record: A NamedTuple to consume.

    :returns An OrderedDict of strings/strings.
"""


def record_to_key_values_strings(record: NamedTuple) -> "OrderedDict[str, str]":

    key_values = OrderedDict()

    for key, value in record._asdict().items():

        # Turn "key_name" into "Key name"

        pretty_key = key[0].upper() + key[1:]
        pretty_key = pretty_key.replace("_", " ")

        # Stringify the value

        if isinstance(value, Enum):

            key_values[pretty_key] = value.name

        elif isinstance(value, bool):

            key_values[pretty_key] = "yes" if value else "no"

        elif isinstance(value, int):

            key_values[pretty_key] = "0x%08x" % value

        elif value is None:

            key_values[pretty_key] = "N/A"

        else:

            key_values[pretty_key] = str(value)

    return key_values


"""
    Print an ASCII table from a list of records, with field names as row 1
    and values as further rows.
"""


def pretty_print_records(records: Sequence[NamedTuple]):

    if records:

        key_values_pairs = [record_to_key_values_strings(record) for record in records]

        pretty_print_table(
            [list(key_values_pairs[0].keys())]  # Row 1: field names
            + [
                list(key_values.values()) for key_values in key_values_pairs
            ]  # Rows 2+: field values
        )


"""
    Print an ascii table from a list (rows) of list (columns) of strings (cells)
"""


def pretty_print_table(rows: List[List[str]]):

    # Calculate columns length

    number_of_columns = len(rows[0])

    column_to_max_length = [
        max(len(row[column]) for row in rows) for column in range(number_of_columns)
    ]

    # Do a nice table

    print()

    print("+-%s-+" % "---".join("-" * max_len for max_len in column_to_max_length))

    for row in rows:

        print(
            "| %s |"
            % " | ".join(
                row[column].ljust(column_to_max_length[column])
                for column in range(number_of_columns)
            )
        )

        print("+-%s-+" % "---".join("-" * max_len for max_len in column_to_max_length))

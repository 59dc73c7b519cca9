"""
Client identification for RPC requests.

Every request made by :class:`spl_delegate.token_client.TokenClient` carries
a header naming this package and its installed version, so node operators can
tell its traffic apart in their logs.

Examples:
    Building the header by hand::

        from spl_delegate.metadata import Metadata

        headers = {Metadata.CLIENT_HEADER: Metadata.get_client_header_val()}
"""

import importlib.metadata as metadata

# Package name constant for metadata lookup
PACKAGE_NAME = "spl-delegate"


class Metadata:
    """Static helpers for the client identification header."""

    CLIENT_HEADER = "solana-client"

    @staticmethod
    def get_client_header_val():
        """Return ``spl-delegate-python/<version>``.

        Falls back to ``0.0.0`` when the package is imported from a source
        checkout that was never installed.
        """
        try:
            version = metadata.version(PACKAGE_NAME)
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        return f"spl-delegate-python/{version}"

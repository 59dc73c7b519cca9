"""
Examples for the token delegation package.

    - token_delegation.py: two-wallet walkthrough of minting, approving a
      delegate and a delegated transfer on devnet
    - common.py: shared network configuration

Run them as modules from the repository root::

    python -m examples.token_delegation

The full four-wallet workflow, with a persistent key file and a funding
checkpoint, is the ``run`` command of ``spl_delegate.cli``.
"""

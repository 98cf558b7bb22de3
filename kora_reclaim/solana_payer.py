from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import List, Tuple

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from kora_reclaim.token_program import close_account_instruction
from kora_reclaim.validation import load_keypair


@dataclass(frozen=True)
class OperatorSigner:
    """Signs transactions with the operator keypair, which is also the fee payer."""

    keypair: Keypair = field(repr=False)

    @classmethod
    def from_file(cls, keypair_path: str) -> "OperatorSigner":
        return cls(load_keypair(keypair_path))

    @property
    def pubkey(self) -> str:
        return str(self.keypair.pubkey())

    def sign(self, instructions: List[Instruction], recent_blockhash: str) -> Tuple[str, str]:
        """
        Compile and sign a v0 transaction.

        Returns:
            Tuple of (base64 wire transaction, signature)
        """
        msg = MessageV0.try_compile(
            self.keypair.pubkey(),
            instructions,
            [],
            Hash.from_string(recent_blockhash),
        )
        tx = VersionedTransaction(msg, [self.keypair])
        wire = base64.b64encode(bytes(tx)).decode("ascii")
        return wire, str(tx.signatures[0])

    def close_account_tx(
        self,
        account: str,
        destination: str,
        token_program: str,
        recent_blockhash: str,
    ) -> Tuple[str, str]:
        ix = close_account_instruction(account, destination, self.keypair.pubkey(), token_program)
        return self.sign([ix], recent_blockhash)

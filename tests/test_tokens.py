from __future__ import annotations

import asyncio

import pytest

from custody.derivation import SecretDeriver
from custody.engine import TokenStatus
from custody.errors import (
    MintError,
    PartialTransferError,
    SigningError,
    TokenImportError,
    TransferError,
)
from custody.tokens import TokenLifecycleController

from .fakes import FakeEngine, fake_address

ALICE = 101
BOB = 202


def make_controller(engine: FakeEngine | None = None) -> tuple[TokenLifecycleController, SecretDeriver, FakeEngine]:
    engine = engine or FakeEngine()
    deriver = SecretDeriver("server-secret")
    controller = TokenLifecycleController(
        engine, deriver, token_class_id="class-1", token_value="1000"
    )
    return controller, deriver, engine


def test_mint_yields_owned_unspent_file() -> None:
    controller, deriver, engine = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        _, status = await controller.status(minted.content, deriver.derive(ALICE))
        return minted, status

    minted, status = asyncio.run(scenario())
    assert status == TokenStatus(owned=True, unspent=True)
    assert len(minted.token_id) == 64
    assert minted.filename == f"{minted.token_id}.txf"


def test_mint_uses_configured_class() -> None:
    controller, _, engine = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        return await engine.import_flow(minted.content)

    token = asyncio.run(scenario())
    assert token["class"] == "class-1"
    assert token["value"] == "1000"


def test_mint_failure_raises_mint_error() -> None:
    controller, _, engine = make_controller()
    engine.failing.add("mint")

    with pytest.raises(MintError):
        asyncio.run(controller.mint(ALICE))


def test_status_is_repeatable() -> None:
    controller, deriver, _ = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        first = await controller.status(minted.content, deriver.derive(ALICE))
        second = await controller.status(minted.content, deriver.derive(ALICE))
        return first[1], second[1]

    first, second = asyncio.run(scenario())
    assert first == second == TokenStatus(owned=True, unspent=True)


def test_status_for_non_owner() -> None:
    controller, deriver, _ = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        return (await controller.status(minted.content, deriver.derive(BOB)))[1]

    assert asyncio.run(scenario()) == TokenStatus(owned=False, unspent=True)


def test_status_rejects_garbage() -> None:
    controller, deriver, _ = make_controller()

    with pytest.raises(TokenImportError):
        asyncio.run(controller.status("not a token", deriver.derive(ALICE)))


def test_unchanged_token_survives_reimport() -> None:
    controller, deriver, engine = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        reexported = await engine.export_flow(await engine.import_flow(minted.content), None, True)
        return (
            await controller.status(minted.content, deriver.derive(ALICE)),
            await controller.status(reexported, deriver.derive(ALICE)),
        )

    original, reexported = asyncio.run(scenario())
    assert original == reexported


def test_transfer_rebinds_ownership() -> None:
    controller, deriver, _ = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        token, _ = await controller.status(minted.content, deriver.derive(ALICE))
        new_file = await controller.transfer(
            token,
            fake_address(deriver.derive(BOB)),
            deriver.derive(ALICE),
            deriver.derive(BOB),
        )
        return (
            (await controller.status(new_file, deriver.derive(BOB)))[1],
            (await controller.status(new_file, deriver.derive(ALICE)))[1],
            (await controller.status(minted.content, deriver.derive(ALICE)))[1],
        )

    bob_view, alice_view, old_file = asyncio.run(scenario())
    assert bob_view == TokenStatus(owned=True, unspent=True)
    assert alice_view.owned is False
    assert old_file == TokenStatus(owned=True, unspent=False)


def test_each_transfer_uses_fresh_salt() -> None:
    controller, deriver, engine = make_controller()

    async def scenario():
        for _ in range(2):
            minted = await controller.mint(ALICE)
            token, _ = await controller.status(minted.content, deriver.derive(ALICE))
            await controller.transfer(
                token, fake_address(deriver.derive(BOB)), deriver.derive(ALICE), deriver.derive(BOB)
            )

    asyncio.run(scenario())
    assert len(engine.salts) == 2
    assert engine.salts[0] != engine.salts[1]


def test_transfer_failure_raises_transfer_error() -> None:
    controller, deriver, engine = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        token, _ = await controller.status(minted.content, deriver.derive(ALICE))
        engine.failing.add("transaction")
        await controller.transfer(
            token, fake_address(deriver.derive(BOB)), deriver.derive(ALICE), deriver.derive(BOB)
        )

    with pytest.raises(TransferError):
        asyncio.run(scenario())
    assert engine.spent == set()


def test_transfer_by_non_owner_fails() -> None:
    controller, deriver, _ = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        token, _ = await controller.status(minted.content, deriver.derive(BOB))
        await controller.transfer(
            token, fake_address(deriver.derive(BOB)), deriver.derive(BOB), deriver.derive(BOB)
        )

    with pytest.raises(TransferError):
        asyncio.run(scenario())


def test_sign_failure_raises_signing_error() -> None:
    controller, deriver, engine = make_controller()
    engine.failing.add("sign")

    with pytest.raises(SigningError):
        asyncio.run(controller.sign(deriver.derive(ALICE), "ab" * 32))


def test_recipient_reimport_failure_keeps_handoff() -> None:
    controller, deriver, engine = make_controller()
    engine.rejected_import_secrets.add(deriver.derive(BOB))

    async def scenario():
        minted = await controller.mint(ALICE)
        token, _ = await controller.status(minted.content, deriver.derive(ALICE))
        with pytest.raises(PartialTransferError) as excinfo:
            await controller.transfer(
                token, fake_address(deriver.derive(BOB)), deriver.derive(ALICE), deriver.derive(BOB)
            )
        engine.rejected_import_secrets.clear()
        rebound = await engine.import_flow(excinfo.value.handoff, deriver.derive(BOB))
        bob_status = await engine.get_token_status(rebound, deriver.derive(BOB))
        source = (await controller.status(minted.content, deriver.derive(ALICE)))[1]
        return excinfo.value, bob_status, source

    error, bob_status, source = asyncio.run(scenario())
    assert isinstance(error, TransferError)
    assert bob_status == TokenStatus(owned=True, unspent=True)
    assert source == TokenStatus(owned=True, unspent=False)


def test_export_failure_after_acceptance_is_partial() -> None:
    controller, deriver, engine = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        token, _ = await controller.status(minted.content, deriver.derive(ALICE))
        engine.failing.add("export")
        with pytest.raises(PartialTransferError) as excinfo:
            await controller.transfer(
                token, fake_address(deriver.derive(BOB)), deriver.derive(ALICE), deriver.derive(BOB)
            )
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.handoff is None
    assert len(engine.spent) == 1


def test_rejected_transaction_is_not_partial() -> None:
    controller, deriver, engine = make_controller()

    async def scenario():
        minted = await controller.mint(ALICE)
        token, _ = await controller.status(minted.content, deriver.derive(ALICE))
        engine.failing.add("transaction")
        with pytest.raises(TransferError) as excinfo:
            await controller.transfer(
                token, fake_address(deriver.derive(BOB)), deriver.derive(ALICE), deriver.derive(BOB)
            )
        return excinfo.value

    assert not isinstance(asyncio.run(scenario()), PartialTransferError)

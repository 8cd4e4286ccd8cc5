"""
Tests for rewriter.py
"""
import base64

import pytest
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta
from solders.keypair import Keypair

from vaultswap.errors import ErrorCode, ErrorKind, Stage, SwapError
from vaultswap.rewriter import (AddressTableReference, InstructionRewriter, LookupTableCache, ResolvedAccount,
                                message_account_slots)
from tests.factories import build_aggregator_transaction


@pytest.fixture
def rewriter(fake_solana, aggregator_program):
    return InstructionRewriter(fake_solana, aggregator_program)


class TestRewrite:

    @pytest.mark.asyncio
    async def test_resolves_lookups_with_writability(self, rewriter, route_world):
        owner = Keypair().pubkey()
        route = await rewriter.rewrite(route_world["build"](owner), owner)

        assert [a.pubkey for a in route.accounts] == [owner, route_world["pool_writable"], route_world["pool_readonly"]]
        assert [a.is_writable for a in route.accounts] == [True, True, False]
        assert route.writable_count() == 2
        assert route.lookup_tables == (route_world["table"],)

    @pytest.mark.asyncio
    async def test_payload_is_instruction_data(self, rewriter, route_world):
        owner = Keypair().pubkey()
        data = bytes([1, 2, 3, 4, 5, 6, 7, 8, 9])
        route = await rewriter.rewrite(route_world["build"](owner, data=data), owner)
        assert route.payload == data

    @pytest.mark.asyncio
    async def test_signer_flags_always_cleared(self, rewriter, route_world):
        owner = Keypair().pubkey()
        intruder = Keypair().pubkey()
        extra = [
            AccountMeta(pubkey=route_world["pool_writable"], is_signer=False, is_writable=True),
            AccountMeta(pubkey=intruder, is_signer=True, is_writable=False),
        ]
        route = await rewriter.rewrite(route_world["build"](owner, extra_accounts=extra), owner)

        assert intruder in [a.pubkey for a in route.accounts]
        assert all(a.is_signer is False for a in route.accounts)

    @pytest.mark.asyncio
    async def test_static_readonly_account(self, rewriter):
        owner = Keypair().pubkey()
        oracle = Keypair().pubkey()
        b64 = build_aggregator_transaction(
            owner, extra_accounts=[AccountMeta(pubkey=oracle, is_signer=False, is_writable=False)])

        route = await rewriter.rewrite(b64, owner)

        assert route.accounts == (ResolvedAccount(owner, True), ResolvedAccount(oracle, False))
        assert route.lookup_tables == ()

    @pytest.mark.asyncio
    async def test_table_fetched_once_per_pass(self, rewriter, fake_solana, route_world):
        owner = Keypair().pubkey()
        cache = LookupTableCache(fake_solana)

        await rewriter.rewrite(route_world["build"](owner), owner, cache=cache)
        await rewriter.rewrite(route_world["build"](owner), owner, cache=cache)

        assert cache.fetch_count == 1
        assert fake_solana.get_address_lookup_table.await_count == 1

    @pytest.mark.asyncio
    async def test_fresh_cache_per_call(self, rewriter, fake_solana, route_world):
        owner = Keypair().pubkey()
        await rewriter.rewrite(route_world["build"](owner), owner)
        await rewriter.rewrite(route_world["build"](owner), owner)
        assert fake_solana.get_address_lookup_table.await_count == 2


class TestRewriteRejections:

    @pytest.mark.asyncio
    async def test_missing_lookup_table(self, rewriter, fake_solana, route_world):
        owner = Keypair().pubkey()
        fake_solana.tables.clear()

        with pytest.raises(SwapError) as exc_info:
            await rewriter.rewrite(route_world["build"](owner), owner)
        assert exc_info.value.stage == Stage.REWRITE
        assert exc_info.value.kind == ErrorKind.STRUCTURAL
        assert exc_info.value.code == ErrorCode.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_lookup_index_out_of_range(self, rewriter, fake_solana, route_world):
        owner = Keypair().pubkey()
        b64 = route_world["build"](owner)
        # Chain copy of the table is shorter than the one the route was compiled against
        fake_solana.tables[route_world["table_address"]] = AddressLookupTableAccount(
            route_world["table_address"], [route_world["pool_writable"]])

        with pytest.raises(SwapError) as exc_info:
            await rewriter.rewrite(b64, owner)
        assert exc_info.value.code == ErrorCode.ACCOUNT_ORDERING

    @pytest.mark.asyncio
    async def test_no_aggregator_instruction(self, fake_solana, route_world):
        owner = Keypair().pubkey()
        other_program = Keypair().pubkey()
        rewriter = InstructionRewriter(fake_solana, other_program)

        with pytest.raises(SwapError) as exc_info:
            await rewriter.rewrite(route_world["build"](owner), owner)
        assert exc_info.value.code == ErrorCode.AGGREGATOR_INSTRUCTION_MISSING

    @pytest.mark.asyncio
    async def test_route_for_someone_else(self, rewriter):
        owner = Keypair().pubkey()
        b64 = build_aggregator_transaction(
            owner, include_owner=False,
            extra_accounts=[AccountMeta(pubkey=Keypair().pubkey(), is_signer=False, is_writable=True)])

        with pytest.raises(SwapError) as exc_info:
            await rewriter.rewrite(b64, owner)
        assert exc_info.value.code == ErrorCode.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["not base64 at all!", base64.b64encode(b"hello").decode(), ""])
    async def test_undecodable(self, rewriter, payload):
        with pytest.raises(SwapError) as exc_info:
            await rewriter.rewrite(payload, Keypair().pubkey())
        assert exc_info.value.code == ErrorCode.MALFORMED_RESPONSE


class TestAccountSlots:

    def test_order_static_then_writable_then_readonly(self, route_world):
        owner = Keypair().pubkey()
        tx = InstructionRewriter.decode(route_world["build"](owner))
        slots = message_account_slots(tx.message)
        static_count = len(list(tx.message.account_keys))

        assert all(isinstance(s, ResolvedAccount) for s in slots[:static_count])
        assert slots[0] == ResolvedAccount(owner, True)
        lookups = slots[static_count:]
        assert lookups == [
            AddressTableReference(route_world["table_address"], 0, True),
            AddressTableReference(route_world["table_address"], 1, False),
        ]

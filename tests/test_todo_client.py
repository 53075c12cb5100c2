"""
Integration Tests for Todo Contract Client
Full flow against the in-memory chain
"""

import asyncio

import pytest

from blockchain.errors import ItemNotFound, SessionClosed
from blockchain.models import ItemState, TxStatus


class TestTodoFlow:

    @pytest.mark.asyncio
    async def test_create_is_pending_then_durable(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        client = connector.client_for('evm_test')
        client.contracts[session.address] = 'list-existing'
        client.hold = True

        item = await todos.create(session, "buy milk")

        assert item.state == ItemState.PENDING
        assert [i.text for i in todos.list(session)] == ["buy milk"]

        client.hold = False
        await todos.wait_until_settled(session)

        items = todos.list(session)
        assert len(items) == 1
        assert items[0].id == '1'
        assert items[0].state == ItemState.DURABLE
        assert items[0].is_durable

    @pytest.mark.asyncio
    async def test_net_effect_of_operations(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))

        first = await todos.create(session, "one")
        second = await todos.create(session, "two")
        third = await todos.create(session, "three")

        # Provisional ids resolve once the creates confirm
        await todos.update(session, first.id, done=True)
        await todos.update(session, second.id, text="two (edited)")
        await todos.remove(session, third.id)
        await todos.wait_until_settled(session)

        listed = {i.text: i.done for i in todos.list(session)}
        assert listed == {"one": True, "two (edited)": False}
        assert all(i.is_durable for i in todos.list(session))

        on_chain = await connector.client_for('evm_test').read_items('list-evm_test-1', session.address)
        assert sorted((t, d) for _, t, d in on_chain) == sorted(listed.items())

    @pytest.mark.asyncio
    async def test_existing_contract_never_deploys(self, connector, todos, factory, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        client = connector.client_for('evm_test')
        client.contracts[session.address] = 'list-existing'

        await todos.create(session, "hello")
        await todos.wait_until_settled(session)

        assert client.deploy_count == 0
        assert all(b['call'].method != 'deploy' for b in client.broadcasts)

    @pytest.mark.asyncio
    async def test_remove_hides_immediately(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        item = await todos.create(session, "temp")
        await todos.wait_until_settled(session)

        connector.client_for('evm_test').hold = True
        await todos.remove(session, '1')

        assert todos.list(session) == []
        with pytest.raises(ItemNotFound):
            todos.get(session, '1')
        assert item.id != '1'

        await todos.close()

    @pytest.mark.asyncio
    async def test_failed_update_rolls_back(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        await todos.create(session, "original")
        await todos.wait_until_settled(session)

        connector.client_for('evm_test').revert_methods.add('update')
        pending = await todos.update(session, '1', text="changed")
        assert pending.text == "changed"

        await todos.wait_until_settled(session)

        item = todos.get(session, '1')
        assert item.text == "original"
        assert item.state == ItemState.FAILED
        assert item.failed_tx_hash is not None

    @pytest.mark.asyncio
    async def test_failed_create_listed_until_dismissed(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        await todos.create(session, "anchor")
        await todos.wait_until_settled(session)

        connector.client_for('evm_test').revert_methods.add('create')
        item = await todos.create(session, "doomed")
        await todos.wait_until_settled(session)

        failed = todos.get(session, item.id)
        assert failed.state == ItemState.FAILED
        assert failed.failed_tx_hash == item.tx_hash
        assert [i.text for i in todos.list(session)] == ["anchor", "doomed"]

        await todos.remove(session, item.id)

        assert [i.text for i in todos.list(session)] == ["anchor"]
        history = todos.cache.history('evm_test', session.address, item.id)
        assert history[-1]['status'] == 'failed'

    @pytest.mark.asyncio
    async def test_sync_clears_failed_create(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        await todos.create(session, "anchor")
        await todos.wait_until_settled(session)

        connector.client_for('evm_test').revert_methods.add('create')
        await todos.create(session, "doomed")
        await todos.wait_until_settled(session)

        items = await todos.sync(session)

        assert [(i.id, i.text) for i in items] == [('1', "anchor")]

    @pytest.mark.asyncio
    async def test_unknown_item(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))

        with pytest.raises(ItemNotFound):
            await todos.update(session, '42', done=True)

    @pytest.mark.asyncio
    async def test_closed_session(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        await connector.disconnect(session)

        with pytest.raises(SessionClosed):
            await todos.create(session, "late")

    @pytest.mark.asyncio
    async def test_sync_rebuilds_from_chain(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        client = connector.client_for('evm_test')
        client.contracts[session.address] = 'list-existing'
        client.items['list-existing'] = {7: ("from another device", True)}

        items = await todos.sync(session)

        assert [(i.id, i.text, i.done) for i in items] == [('7', "from another device", True)]
        assert items[0].is_durable

    @pytest.mark.asyncio
    async def test_sync_without_contract(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))

        assert await todos.sync(session) == []
        assert connector.client_for('evm_test').deploy_count == 0


class TestNetworkSwitch:

    @pytest.mark.asyncio
    async def test_switch_leaves_pending_tx_and_separate_cache(self, connector, todos, tx_manager, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        evm_client = connector.client_for('evm_test')
        await todos.create(session, "settled")
        await todos.wait_until_settled(session)

        evm_client.hold = True
        pending = await todos.create(session, "in flight")
        tx = tx_manager.transactions[pending.pending_tx]
        await asyncio.sleep(0.02)

        other = await connector.switch_network(session, 'evm_other', auth_for('evm_other'))
        await todos.wait_until_settled(session)

        assert tx.status == TxStatus.SUBMITTED
        assert todos.reconciler.tracked_count() == 0

        assert todos.list(other) == []
        await todos.create(other, "elsewhere")
        await todos.wait_until_settled(other)

        assert [i.text for i in todos.list(other)] == ["elsewhere"]
        assert sorted(i.text for i in todos.list(session)) == ["in flight", "settled"]

    @pytest.mark.asyncio
    async def test_same_owner_on_three_families(self, connector, todos, auth_for):
        for network_id in ('evm_test', 'solana_test', 'polkadot_test'):
            session = await connector.connect(network_id, auth_for(network_id))
            await todos.create(session, f"on {network_id}")
            await todos.wait_until_settled(session)

            assert [i.text for i in todos.list(session)] == [f"on {network_id}"]

    @pytest.mark.asyncio
    async def test_close_cancels_trackers(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        client = connector.client_for('evm_test')
        client.contracts[session.address] = 'list-existing'
        client.hold = True
        await todos.create(session, "never confirmed")

        await todos.close()

        assert todos.list(session)[0].state == ItemState.PENDING


class TestAfterTimeout:
    """A tracker that timed out leaves the write recoverable"""

    @staticmethod
    async def _timed_out_create(connector, todos, session):
        client = connector.client_for('evm_test')
        client.contracts[session.address] = 'list-existing'
        client.hold = True

        item = await todos.create(session, "slow")
        await todos.wait_until_settled(session)
        client.hold = False
        return item

    @pytest.mark.asyncio
    async def test_refresh_applies_late_confirmation(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        item = await self._timed_out_create(connector, todos, session)

        assert todos.get(session, item.id).state == ItemState.PENDING
        assert todos.reconciler.tracked_count() == 1

        refreshed = await todos.refresh(session, item.id)

        assert (refreshed.id, refreshed.state) == ('1', ItemState.DURABLE)
        assert [(i.id, i.state) for i in todos.list(session)] == [('1', ItemState.DURABLE)]

    @pytest.mark.asyncio
    async def test_sync_after_caller_repolled(self, connector, todos, tx_manager, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        item = await self._timed_out_create(connector, todos, session)

        tx = todos.reconciler.tracked(item.pending_tx)
        await tx_manager.wait_for_confirmation(tx)
        assert tx.status == TxStatus.CONFIRMED

        items = await todos.sync(session)

        assert [(i.id, i.text, i.state) for i in items] == [('1', "slow", ItemState.DURABLE)]

    @pytest.mark.asyncio
    async def test_update_waits_for_untracked_create(self, connector, todos, auth_for):
        session = await connector.connect('evm_test', auth_for('evm_test'))
        item = await self._timed_out_create(connector, todos, session)

        updated = await todos.update(session, item.id, done=True)
        await todos.wait_until_settled(session)

        assert updated.id == '1'
        assert [(i.text, i.done, i.state) for i in todos.list(session)] == [("slow", True, ItemState.DURABLE)]

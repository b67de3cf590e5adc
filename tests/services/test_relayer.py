from unittest.mock import MagicMock

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from services.exceptions import ChainError, ExecutionRevertedError, SubmissionTimeoutError
from services.relayer import RelayerSubmitter

MANAGER = '0x' + '44' * 20
RELAYER = '0x' + '55' * 20


def _web3(chain_nonce=7, receipt_status=1):
    web3 = MagicMock()
    web3.eth.account.from_key.return_value.address = RELAYER
    web3.eth.get_transaction_count.return_value = chain_nonce
    web3.eth.send_raw_transaction.return_value = bytes.fromhex('12' * 32)
    web3.eth.wait_for_transaction_receipt.return_value = {
        'status': receipt_status,
        'blockNumber': 99,
        'gasUsed': 150_000,
    }
    call = web3.eth.contract.return_value.functions.execute.return_value
    call.build_transaction.side_effect = lambda params: dict(params)
    call.call.return_value = 190 * 10 ** 18
    return web3, call


def _submitter(web3):
    return RelayerSubmitter(
        rpc_url='http://rpc.test',
        private_key='0x' + '01' * 32,
        manager_address=MANAGER,
        chain_id=1946,
        rpc_timeout=5,
        confirmation_timeout=30,
        web3=web3,
    )


@pytest.mark.asyncio
async def test_submit_signs_with_sequential_relayer_nonces(make_order):
    web3, call = _web3()
    submitter = _submitter(web3)

    first = await submitter.submit(make_order(nonce=1))
    second = await submitter.submit(make_order(nonce=2))

    nonces = [c.args[0]['nonce'] for c in call.build_transaction.call_args_list]
    assert nonces == [7, 8]
    assert call.build_transaction.call_args_list[0].args[0]['chainId'] == 1946
    assert call.build_transaction.call_args_list[0].args[0]['from'] == RELAYER
    assert first.tx_hash == '0x' + '12' * 32
    assert first.block_number == 99
    assert second.gas_used == 150_000


@pytest.mark.asyncio
async def test_execute_is_called_with_struct_and_signature(make_order):
    web3, _ = _web3()
    submitter = _submitter(web3)
    order = make_order()

    await submitter.submit(order)

    execute = web3.eth.contract.return_value.functions.execute
    struct, signature = execute.call_args.args
    assert struct['amountIn'] == order.amount_in
    assert struct['limitPriceE18'] == order.limit_price_e18
    assert struct['trader'].lower() == order.trader
    assert signature == bytes.fromhex('ab' * 65)


@pytest.mark.asyncio
async def test_send_failure_resyncs_nonce_from_chain(make_order):
    web3, call = _web3()
    web3.eth.send_raw_transaction.side_effect = [ValueError("nonce too low"), bytes.fromhex('34' * 32)]
    submitter = _submitter(web3)

    with pytest.raises(ChainError):
        await submitter.submit(make_order(nonce=1))
    await submitter.submit(make_order(nonce=2))

    nonces = [c.args[0]['nonce'] for c in call.build_transaction.call_args_list]
    assert nonces == [7, 7]


@pytest.mark.asyncio
async def test_mined_revert_carries_tx_hash(make_order):
    web3, _ = _web3(receipt_status=0)
    submitter = _submitter(web3)

    with pytest.raises(ExecutionRevertedError) as excinfo:
        await submitter.submit(make_order())
    assert excinfo.value.tx_hash == '0x' + '12' * 32


@pytest.mark.asyncio
async def test_missing_receipt_is_a_timeout(make_order):
    web3, _ = _web3()
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted()
    submitter = _submitter(web3)

    with pytest.raises(SubmissionTimeoutError):
        await submitter.submit(make_order())


@pytest.mark.asyncio
async def test_simulation_returns_amount_and_maps_reverts(make_order):
    web3, call = _web3()
    submitter = _submitter(web3)

    assert await submitter.simulate(make_order()) == 190 * 10 ** 18
    assert call.call.call_args.args[0] == {'from': RELAYER}

    call.call.side_effect = ContractLogicError("execution reverted: expired")
    with pytest.raises(ExecutionRevertedError) as excinfo:
        await submitter.simulate(make_order())
    assert excinfo.value.reason == 'expired'
    assert excinfo.value.tx_hash is None

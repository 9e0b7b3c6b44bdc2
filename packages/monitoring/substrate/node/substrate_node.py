import asyncio
import functools
import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from substrateinterface import SubstrateInterface

from packages.monitoring.base.enhanced_logging import ErrorContextManager, classify_error
from packages.monitoring.substrate.block_details.block_details import (
    AuthorMapping, Block, BlockHeader, ChainEvent, DigestLog, Extrinsic, FeeQuote,
    IdentityRecord, PendingTransaction
)
from packages.monitoring.substrate.errors import EventShapeError, IdentityDecodeError
from packages.monitoring.substrate.node.abstract_node import ChainNode, HeadCallback, SubscriptionHandle
from packages.monitoring.substrate.node.substrate_interface_factory import SubstrateInterfaceFactory


def decode_weight(value: Any) -> int:
    """Weights are plain integers on older runtimes, ``{ref_time, proof_size}`` on newer ones"""
    if value is None:
        return 0
    if isinstance(value, dict):
        for key in ('ref_time', 'refTime'):
            if key in value:
                return int(value[key])
        raise EventShapeError(f"Unexpected weight shape: {value}")
    return int(value)


def decode_pays_fee(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return True
    return str(value).lower() == 'yes'


def _hex_to_text(value: str) -> str:
    if isinstance(value, str) and value.startswith('0x'):
        return bytes.fromhex(value[2:]).decode('ascii', errors='replace')
    return str(value)


def decode_digest_log(log: Any) -> DigestLog:
    value = getattr(log, 'value', log)
    if not isinstance(value, dict) or len(value) != 1:
        return DigestLog(kind='Other')

    kind, payload = next(iter(value.items()))
    if isinstance(payload, dict):
        engine, data = payload.get('engine'), payload.get('data')
    elif isinstance(payload, (list, tuple)) and len(payload) == 2:
        engine, data = payload
    else:
        return DigestLog(kind=kind)

    return DigestLog(kind=kind, engine=_hex_to_text(engine), data=data)


def decode_extrinsic(index: int, extrinsic: Any) -> Extrinsic:
    value = getattr(extrinsic, 'value', extrinsic) or {}
    call = value.get('call', value)
    args = tuple(
        (arg.get('name'), arg.get('value'))
        for arg in call.get('call_args') or []
    )

    data = getattr(extrinsic, 'data', None)
    data_hex = data.to_hex() if hasattr(data, 'to_hex') else (str(data) if data else '')

    return Extrinsic(
        index=index,
        hash=value.get('extrinsic_hash'),
        section=call.get('call_module', ''),
        method=call.get('call_function', ''),
        args=args,
        data=data_hex,
    )


def decode_header(header: Dict[str, Any], block_hash: Optional[str] = None) -> BlockHeader:
    digest = header.get('digest') or {}
    return BlockHeader(
        number=int(header['number']),
        hash=block_hash or header.get('hash') or '',
        parent_hash=header.get('parentHash', ''),
        digest_logs=tuple(decode_digest_log(log) for log in digest.get('logs', [])),
    )


def decode_block(raw_block: Dict[str, Any], block_hash: Optional[str] = None) -> Block:
    return Block(
        header=decode_header(raw_block['header'], block_hash),
        extrinsics=tuple(decode_extrinsic(i, e) for i, e in enumerate(raw_block.get('extrinsics') or [])),
    )


def decode_event(record: Any) -> ChainEvent:
    value = getattr(record, 'value', record)
    if not isinstance(value, dict):
        raise EventShapeError(f"Unexpected event record: {record}")

    event = value.get('event') or {}
    section = value.get('module_id') or event.get('module_id')
    method = value.get('event_id') or event.get('event_id')
    if not section or not method:
        raise EventShapeError(f"Event record without module/event id: {value}")

    attributes = value.get('attributes', event.get('attributes'))
    if attributes is None:
        data = ()
    elif isinstance(attributes, dict):
        data = tuple(attributes.values())
    elif isinstance(attributes, (list, tuple)):
        data = tuple(attributes)
    else:
        data = (attributes,)

    return ChainEvent(
        extrinsic_index=value.get('extrinsic_idx'),
        section=section,
        method=method,
        data=data,
    )


def decode_fee_quote(result: Dict[str, Any]) -> FeeQuote:
    return FeeQuote(
        weight=decode_weight(result.get('weight')),
        partial_fee=int(result.get('partialFee', result.get('partial_fee', 0))),
        pays_fee=decode_pays_fee(result.get('paysFee', result.get('pays_fee'))),
        dispatch_class=str(result.get('class', 'Normal')).capitalize(),
    )


def decode_identity(value: Any) -> Optional[IdentityRecord]:
    """Decode an ``Identity.IdentityOf`` value; newer runtimes wrap it as (registration, username)"""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = value[0]
    try:
        display = value['info']['display']
    except (KeyError, TypeError) as e:
        raise IdentityDecodeError(f"Unexpected identity shape: {value}") from e

    raw = display.get('Raw') if isinstance(display, dict) else None
    if raw is None:
        return IdentityRecord(display_name_bytes=b'')
    if isinstance(raw, str) and raw.startswith('0x'):
        try:
            return IdentityRecord(display_name_bytes=bytes.fromhex(raw[2:]))
        except ValueError as e:
            raise IdentityDecodeError(f"Invalid display bytes: {raw}") from e
    if isinstance(raw, (bytes, bytearray)):
        return IdentityRecord(display_name_bytes=bytes(raw))
    return IdentityRecord(display_name_bytes=str(raw).encode('utf-8'))


def decode_pending_transaction(extrinsic_hex: str) -> PendingTransaction:
    data = bytes.fromhex(extrinsic_hex[2:] if extrinsic_hex.startswith('0x') else extrinsic_hex)
    return PendingTransaction(
        hash='0x' + hashlib.blake2b(data, digest_size=32).hexdigest(),
        data=extrinsic_hex,
    )


class SubstrateSubscription(SubscriptionHandle):
    JOIN_TIMEOUT_SECONDS = 5

    def __init__(self, thread_name: str):
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.substrate: Optional[SubstrateInterface] = None
        self.error: Optional[Exception] = None
        self.thread_name = thread_name

    def unsubscribe(self) -> None:
        if self.stop_event.is_set():
            return
        self.stop_event.set()

        # Closing the websocket unblocks the subscription loop without waiting for the next head
        if self.substrate is not None:
            try:
                self.substrate.close()
            except Exception as e:
                logger.warning(f"Error closing head subscription connection: {e}")

        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=self.JOIN_TIMEOUT_SECONDS)
            if self.thread.is_alive():
                logger.warning("Head subscription thread still running", extra={"subscription": self.thread_name})

        logger.info("Head subscription released", extra={"subscription": self.thread_name})


class SubstrateNode(ChainNode):
    """ChainNode backed by py-substrate-interface.

    SubstrateInterface is blocking and keeps one websocket per instance, so
    every executor thread lazily opens its own instance.
    """

    def __init__(self, network: str, node_ws_url: str, max_workers: int = 8):
        self.network = network
        self.node_ws_url = node_ws_url
        self.error_ctx = ErrorContextManager(f"substrate-{network}-node")
        self._local = threading.local()
        self._interfaces: List[SubstrateInterface] = []
        self._interfaces_lock = threading.Lock()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="substrate-node")

        logger.info(
            "Substrate node initialized",
            extra={
                "network": network,
                "endpoint": node_ws_url,
                "max_workers": max_workers
            }
        )

    def _create_interface(self) -> SubstrateInterface:
        substrate = SubstrateInterfaceFactory.create_substrate_interface(self.network, self.node_ws_url)
        with self._interfaces_lock:
            self._interfaces.append(substrate)
        return substrate

    def _substrate(self) -> SubstrateInterface:
        substrate = getattr(self._local, 'substrate', None)
        if substrate is None:
            substrate = self._create_interface()
            self._local.substrate = substrate
        return substrate

    async def _call(self, rpc_method: str, fn, *args, **context):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.executor, functools.partial(fn, *args))
        except Exception as e:
            self.error_ctx.log_error(
                f"Substrate call {rpc_method} failed",
                e,
                rpc_method=rpc_method,
                endpoint=self.node_ws_url,
                network=self.network,
                error_category=classify_error(e),
                **context
            )
            raise

    def test_connection(self) -> str:
        """Open the calling thread's connection and return the chain head hash"""
        chain_head = self._substrate().get_chain_head()
        logger.info(
            "Substrate connection established",
            extra={"endpoint": self.node_ws_url, "network": self.network, "chain_head": chain_head}
        )
        return chain_head

    def _get_block(self, block_hash: Optional[str]) -> Block:
        substrate = self._substrate()
        if block_hash is None:
            block_hash = substrate.get_chain_head()
        return decode_block(substrate.get_block(block_hash=block_hash), block_hash)

    async def get_block(self, block_hash: Optional[str] = None) -> Block:
        return await self._call("chain_getBlock", self._get_block, block_hash, block_hash=block_hash)

    async def get_block_hash(self, block_number: int) -> str:
        def fetch():
            block_hash = self._substrate().get_block_hash(block_number)
            if not block_hash:
                raise ValueError(f"No block found at height {block_number}")
            return block_hash

        return await self._call("chain_getBlockHash", fetch, block_number=block_number)

    async def query_events_at(self, block_hash: str) -> List[ChainEvent]:
        def fetch():
            return [decode_event(record) for record in self._substrate().get_events(block_hash)]

        return await self._call("state_getStorage(System.Events)", fetch, block_hash=block_hash)

    async def query_timestamp_at(self, block_hash: str) -> int:
        def fetch():
            return int(self._substrate().query("Timestamp", "Now", block_hash=block_hash).value)

        return await self._call("state_getStorage(Timestamp.Now)", fetch, block_hash=block_hash)

    async def query_max_block_weight(self) -> int:
        def fetch():
            block_weights = self._substrate().get_constant("System", "BlockWeights")
            return decode_weight(block_weights.value['max_block'])

        return await self._call("System.BlockWeights", fetch)

    async def query_fee_quote(self, extrinsic_hex: str, parent_hash: str) -> FeeQuote:
        def fetch():
            response = self._substrate().rpc_request("payment_queryInfo", [extrinsic_hex, parent_hash])
            return decode_fee_quote(response['result'])

        return await self._call("payment_queryInfo", fetch, parent_hash=parent_hash)

    async def query_identity_of(self, account: str) -> Optional[IdentityRecord]:
        def fetch():
            return decode_identity(self._substrate().query("Identity", "IdentityOf", [account]).value)

        return await self._call("state_getStorage(Identity.IdentityOf)", fetch, account=account)

    async def query_identities_batch(self, accounts: Sequence[str]) -> List[Optional[IdentityRecord]]:
        def fetch():
            substrate = self._substrate()
            storage_keys = [
                substrate.create_storage_key("Identity", "IdentityOf", [account])
                for account in accounts
            ]
            return [decode_identity(value.value) for _, value in substrate.query_multi(storage_keys)]

        return await self._call("state_queryStorageAt(Identity.IdentityOf)", fetch, accounts_count=len(accounts))

    async def query_author_mapping(self, author_id: str) -> Optional[AuthorMapping]:
        def fetch():
            mapping = self._substrate().query("AuthorMapping", "MappingWithDeposit", [author_id]).value
            if not mapping:
                return None
            return AuthorMapping(account_id=str(mapping['account']))

        return await self._call("state_getStorage(AuthorMapping.MappingWithDeposit)", fetch, author_id=author_id)

    async def get_pending_transactions(self) -> List[PendingTransaction]:
        def fetch():
            response = self._substrate().rpc_request("author_pendingExtrinsics", [])
            return [decode_pending_transaction(extrinsic) for extrinsic in response['result']]

        return await self._call("author_pendingExtrinsics", fetch)

    def _subscribe(self, callback: HeadCallback, finalized_only: bool) -> SubscriptionHandle:
        subscription = SubstrateSubscription(f"{self.network}-{'finalized' if finalized_only else 'new'}-heads")

        def subscription_handler(obj, update_nr, subscription_id):
            if subscription.stop_event.is_set():
                return subscription_id
            callback(decode_header(obj.get('header', obj)))
            return None

        def run():
            # Dedicated instance, the subscription blocks its websocket
            substrate = self._create_interface()
            subscription.substrate = substrate
            try:
                if not subscription.stop_event.is_set():
                    substrate.subscribe_block_headers(subscription_handler, finalized_only=finalized_only)
            except Exception as e:
                if subscription.stop_event.is_set():
                    logger.debug(f"Head subscription closed: {e}")
                    return
                subscription.error = e
                self.error_ctx.log_error(
                    "Head subscription terminated",
                    e,
                    endpoint=self.node_ws_url,
                    network=self.network,
                    finalized_only=finalized_only,
                    error_category=classify_error(e)
                )
            finally:
                substrate.close()

        subscription.thread = threading.Thread(target=run, name=subscription.thread_name, daemon=True)
        subscription.thread.start()
        return subscription

    async def subscribe_new_heads(self, callback: HeadCallback) -> SubscriptionHandle:
        return self._subscribe(callback, finalized_only=False)

    async def subscribe_finalized_heads(self, callback: HeadCallback) -> SubscriptionHandle:
        return self._subscribe(callback, finalized_only=True)

    def close(self):
        self.executor.shutdown(wait=False)
        with self._interfaces_lock:
            for substrate in self._interfaces:
                try:
                    substrate.close()
                except Exception as e:
                    if not any(err in str(e).lower() for err in ['closed', 'disconnected', 'none']):
                        logger.warning(f"Error closing substrate connection: {e}")
            self._interfaces.clear()

from packages.monitoring.base.enhanced_logging import (
    ErrorContextManager,
    classify_error
)
from packages.monitoring.substrate import Network, networks
from substrateinterface import SubstrateInterface


class SubstrateInterfaceFactory:
    """
    Factory class for creating SubstrateInterface instances based on network type.
    Moonbeam-family chains use 20-byte Ethereum-style accounts and need the
    ``moonbeam`` type registry preset; relay chains use the remote preset.
    """

    _error_ctx = ErrorContextManager("substrate-interface-factory")

    @staticmethod
    def create_substrate_interface(network: str, node_ws_url: str) -> SubstrateInterface:
        """
        Create a SubstrateInterface instance based on the network type.

        Args:
            network: The network identifier (e.g., 'moonbeam', 'moonriver', 'polkadot')
            node_ws_url: The WebSocket URL for the node

        Returns:
            SubstrateInterface: Configured for the specified network

        Raises:
            ValueError: If the network is not supported
        """
        network = network.lower()

        if network in (Network.MOONBEAM.value, Network.MOONRIVER.value, Network.MOONBASE_ALPHA.value):
            return SubstrateInterfaceFactory._create_interface(
                network, node_ws_url, type_registry_preset="moonbeam", ss58_format=1284
            )
        elif network == Network.POLKADOT.value:
            return SubstrateInterfaceFactory._create_interface(network, node_ws_url)

        error = ValueError(f"Unsupported network: {network}")
        SubstrateInterfaceFactory._error_ctx.log_error(
            "Unsupported network configuration",
            error,
            network=network,
            endpoint=node_ws_url,
            error_category="validation_error",
            supported_networks=networks
        )
        raise error

    @staticmethod
    def _create_interface(network: str, node_ws_url: str, **interface_config) -> SubstrateInterface:
        try:
            return SubstrateInterface(
                url=node_ws_url,
                use_remote_preset=True,
                **interface_config
            )
        except Exception as e:
            SubstrateInterfaceFactory._error_ctx.log_error(
                f"Failed to create {network} SubstrateInterface",
                e,
                network=network,
                endpoint=node_ws_url,
                error_category=classify_error(e),
                interface_config={"use_remote_preset": True, **interface_config}
            )
            raise

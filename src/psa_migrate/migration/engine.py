"""Migration engine - main entry point for migration operations."""

from typing import Any, Dict, Optional

from loguru import logger

from ..api.client import PSAClient, PSAClientFactory
from ..api.metadata import EntityMetadata
from ..config.config import Config
from ..models.request import (
    ConfigurationItemMoveRequest,
    ContactMoveRequest,
    OwnershipTransferRequest,
)
from .orchestrator import MigrationOrchestrator
from .strategy import ConfigurationItemMoveStrategy, ContactMoveStrategy, MigrationContext
from .transfer import OwnershipTransfer


class MigrationEngine:
    """Main migration engine that wires configuration, transport and workflows."""

    def __init__(self, config: Config, client: Optional[PSAClient] = None):
        """Initialize migration engine.

        Args:
            config: Application configuration
            client: Transport to use instead of one built from ``config.api``
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        self.client = client or PSAClientFactory.create_client(config.api)
        self.metadata = EntityMetadata(self.client, web_url=config.api.web_url)

        self.context = MigrationContext(
            client=self.client,
            metadata=self.metadata,
            note_truncate_length=config.migration.note_truncate_length,
        )
        self.orchestrator = MigrationOrchestrator(self.context)

    async def move_contact(self, request: ContactMoveRequest) -> Dict[str, Any]:
        """Move a contact to another company.

        Args:
            request: Contact move request

        Returns:
            Run report
        """
        self.logger.info(
            f'Moving contact {request.source_contact_id} to company '
            f'{request.destination_company_id}'
        )
        return await self.orchestrator.execute(ContactMoveStrategy(self.context, request))

    async def move_configuration_item(
        self, request: ConfigurationItemMoveRequest
    ) -> Dict[str, Any]:
        """Move a configuration item to another company.

        Args:
            request: Configuration item move request

        Returns:
            Run report
        """
        self.logger.info(
            f'Moving configuration item {request.source_configuration_item_id} to company '
            f'{request.destination_company_id}'
        )
        return await self.orchestrator.execute(
            ConfigurationItemMoveStrategy(self.context, request)
        )

    async def transfer_ownership(self, request: OwnershipTransferRequest) -> Dict[str, Any]:
        """Reassign a resource's open work to another resource.

        Args:
            request: Ownership transfer request

        Returns:
            Run report
        """
        return await OwnershipTransfer(self.context, request).execute()

    def test_connectivity(self) -> None:
        """Test connectivity to the configured zone.

        Raises:
            ConnectionError: If connectivity test fails
        """
        self.logger.info('Testing connectivity to PSA zone')
        if not self.client.test_connection():
            raise ConnectionError(f'Cannot connect to PSA zone {self.config.api.url}')
        self.logger.info('Connectivity test passed')

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

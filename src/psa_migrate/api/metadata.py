"""Entity field metadata, required-field defaults and deep links."""

from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

from loguru import logger

from .client import PSAClient

ENTITY_COLLECTIONS: Dict[str, str] = {
    'company': 'Companies',
    'companyNote': 'CompanyNotes',
    'companyLocation': 'CompanyLocations',
    'contact': 'Contacts',
    'contactGroupContact': 'ContactGroupContacts',
    'configurationItem': 'ConfigurationItems',
    'configurationItemNote': 'ConfigurationItemNotes',
    'resource': 'Resources',
    'ticket': 'Tickets',
    'ticketNote': 'TicketNotes',
    'task': 'Tasks',
    'taskNote': 'TaskNotes',
    'project': 'Projects',
    'projectNote': 'ProjectNotes',
    'opportunity': 'Opportunities',
    'appointment': 'Appointments',
    'serviceCallTicketResource': 'ServiceCallTicketResources',
    'serviceCallTaskResource': 'ServiceCallTaskResources',
    'ticketSecondaryResource': 'TicketSecondaryResources',
    'taskSecondaryResource': 'TaskSecondaryResources',
}

ENTITY_LINK_MAP: Dict[str, Dict[str, str]] = {
    'configurationitem': {'code': 'EditInstalledProduct', 'param': 'InstalledProductID'},
    'contact': {'code': 'OpenContact', 'param': 'ContactID'},
    'company': {'code': 'OpenAccount', 'param': 'AccountID'},
    'ticket': {'code': 'OpenTicketDetail', 'param': 'TicketID'},
    'project': {'code': 'OpenProject', 'param': 'ProjectID'},
    'contract': {'code': 'OpenContract', 'param': 'ContractID'},
    'opportunity': {'code': 'OpenOpportunity', 'param': 'OpportunityID'},
}

# pre-release zones serve the UI from the same host
NON_STANDARD_WEB_HOSTS = {
    'prde.autotask.net': 'prde.autotask.net',
    'pres.autotask.net': 'pres.autotask.net',
}


def collection_for(entity_kind: str) -> str:
    """Map an entity kind to its REST collection name."""
    return ENTITY_COLLECTIONS.get(entity_kind, entity_kind)


def web_host_for(zone_url: str) -> Optional[str]:
    """Derive the web UI host from a zone or web URL.

    ``webservicesN.autotask.net`` becomes ``wwN.autotask.net``; a URL that
    already points at a ``ww`` host is used as-is.
    """
    if not zone_url:
        return None
    hostname = (urlparse(zone_url).hostname or '').lower()
    if not hostname:
        return None
    if hostname.startswith('webservices'):
        return 'ww' + hostname[len('webservices'):]
    if hostname.startswith('ww'):
        return hostname
    return NON_STANDARD_WEB_HOSTS.get(hostname)


def build_entity_deep_link(
    zone_url: str, entity_kind: str, entity_id: int
) -> Optional[str]:
    """Build an ExecuteCommand link to a record in the web UI.

    Returns None when the host or the entity kind is unknown.
    """
    mapping = ENTITY_LINK_MAP.get(entity_kind.lower())
    if not mapping:
        return None
    host = web_host_for(zone_url)
    if not host:
        return None
    return (
        f'https://{host}/Autotask/AutotaskExtend/ExecuteCommand.aspx'
        f'?Code={mapping["code"]}&{mapping["param"]}={entity_id}'
    )


class EntityMetadata:
    """Cached field information per entity kind."""

    def __init__(self, client: PSAClient, web_url: Optional[str] = None):
        self.client = client
        self.web_url = web_url
        self._fields: Dict[str, List[Dict[str, Any]]] = {}
        self.logger = logger.bind(component='EntityMetadata')

    async def get_fields(self, entity_kind: str) -> List[Dict[str, Any]]:
        """Return the field definitions reported by the API."""
        if entity_kind not in self._fields:
            data = await self.client.request(
                'GET', f'{collection_for(entity_kind)}/entityInformation/fields'
            )
            self._fields[entity_kind] = list(data.get('fields') or [])
            self.logger.debug(
                f'Loaded {len(self._fields[entity_kind])} fields for {entity_kind}'
            )
        return self._fields[entity_kind]

    async def get_writable_field_names(self, entity_kind: str) -> Set[str]:
        """Names of fields the API accepts on create or update."""
        fields = await self.get_fields(entity_kind)
        return {f['name'] for f in fields if f.get('name') and not f.get('isReadOnly')}

    async def get_picklist(
        self, entity_kind: str, field_name: str
    ) -> List[Dict[str, Any]]:
        """Picklist values of one field, empty if the field is not a picklist."""
        for field in await self.get_fields(entity_kind):
            if field.get('name', '').lower() == field_name.lower():
                return list(field.get('picklistValues') or [])
        return []

    async def get_required_field_defaults(
        self, entity_kind: str
    ) -> Dict[str, Optional[Any]]:
        """Map required writable fields to a default value, or None.

        A required picklist defaults to its ``isDefaultValue`` entry, falling
        back to the first active value.
        """
        defaults: Dict[str, Optional[Any]] = {}
        for field in await self.get_fields(entity_kind):
            if field.get('isReadOnly') or not field.get('isRequired'):
                continue
            value = None
            if field.get('isPickList'):
                active = [v for v in field.get('picklistValues') or [] if v.get('isActive')]
                picked = next((v for v in active if v.get('isDefaultValue')), None)
                if picked is None and active:
                    picked = active[0]
                if picked is not None:
                    value = picked.get('value')
            defaults[field['name']] = value
        return defaults

    async def apply_required_field_defaults(
        self, entity_kind: str, payload: Dict[str, Any], warnings: List[str]
    ) -> None:
        """Fill missing required fields in ``payload`` in place.

        Values already present are never overwritten.
        """
        defaults = await self.get_required_field_defaults(entity_kind)
        for name, default in defaults.items():
            if payload.get(name) is not None:
                continue
            if default is not None:
                payload[name] = default
                warnings.append(
                    f'Required field "{name}" on {entity_kind} was set to default value {default}.'
                )
                continue
            warnings.append(
                f'Required field "{name}" on {entity_kind} has no value and no default could be determined.'
            )

    def deep_link(self, entity_kind: str, entity_id: int) -> Optional[str]:
        """Deep link using the web URL override or the zone URL."""
        base = self.web_url or self.client.config.web_url or self.client.config.url
        return build_entity_deep_link(base, entity_kind, entity_id)

"""ERP connectors for SAP and Oracle."""

from erp_sync.connectors.oracle import ORACLE_DEFAULT_MAPPINGS, OracleConnector
from erp_sync.connectors.sap import SAP_DEFAULT_MAPPINGS, SAPConnector
from erp_sync.core.connector import BaseConnector
from erp_sync.core.errors import UnsupportedErpTypeError
from erp_sync.core.mapping import MappingTable
from erp_sync.core.models import ErpType

CONNECTOR_REGISTRY: dict[ErpType, type[BaseConnector]] = {
    ErpType.SAP: SAPConnector,
    ErpType.ORACLE: OracleConnector,
}

ERP_TYPE_LABELS: dict[ErpType, dict[str, str]] = {
    ErpType.SAP: {
        "label": "SAP",
        "description": "SAP ERP integration (MM, PM, CO modules)",
    },
    ErpType.ORACLE: {
        "label": "Oracle",
        "description": "Oracle EBS/Cloud integration (Inventory, Assets, Work Orders)",
    },
}


def connector_class_for(erp_type: ErpType | str) -> type[BaseConnector]:
    try:
        return CONNECTOR_REGISTRY[ErpType(erp_type)]
    except (KeyError, ValueError):
        raise UnsupportedErpTypeError(erp_type) from None


def default_mappings_for(erp_type: ErpType | str) -> MappingTable:
    """Copy of the ERP type's default mapping table."""
    defaults = connector_class_for(erp_type).default_mappings
    return {entity: dict(table) for entity, table in defaults.items()}


__all__ = [
    "SAPConnector",
    "OracleConnector",
    "SAP_DEFAULT_MAPPINGS",
    "ORACLE_DEFAULT_MAPPINGS",
    "CONNECTOR_REGISTRY",
    "ERP_TYPE_LABELS",
    "connector_class_for",
    "default_mappings_for",
]

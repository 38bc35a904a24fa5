# ============================================================================
# FILE: src/airshed/analysis/sectors.py
# ============================================================================
from enum import Enum
from typing import Dict, Optional


class SectorLabel(str, Enum):
    """Human-readable sector groups used in the aggregated emission tables."""

    ENERGY = "Energy"
    INDUSTRY = "Industry"
    RESIDENTIAL = "Residential"
    TRANSPORT = "Transport"
    AGRICULTURE = "Agriculture"
    WASTE = "Waste"
    SOLVENTS = "Solvents"
    TOTAL = "Total"
    OTHERS = "Others"


# Codes that are not listed resolve to DEFAULT_SECTOR_LABEL.
DEFAULT_SECTOR_LABEL = SectorLabel.OTHERS

# EDGAR sector codes. Keys with an underscore are matched as
# "<sector>_<subsector>" before the bare sector code is tried.
SECTOR_LABELS: Dict[str, SectorLabel] = {
    # Power generation and fuel transformation
    'ENE': SectorLabel.ENERGY,
    'REF_TRF': SectorLabel.ENERGY,
    'PRO': SectorLabel.ENERGY,
    'PRO_COAL': SectorLabel.ENERGY,
    'PRO_GAS': SectorLabel.ENERGY,
    'PRO_OIL': SectorLabel.ENERGY,
    # Manufacturing combustion and industrial processes
    'IND': SectorLabel.INDUSTRY,
    'IRO': SectorLabel.INDUSTRY,
    'NFE': SectorLabel.INDUSTRY,
    'NMM': SectorLabel.INDUSTRY,
    'CHE': SectorLabel.INDUSTRY,
    'FOO_PAP': SectorLabel.INDUSTRY,
    'NEU': SectorLabel.INDUSTRY,
    'PRU_SOL': SectorLabel.SOLVENTS,
    'SOL': SectorLabel.SOLVENTS,
    # Buildings
    'RCO': SectorLabel.RESIDENTIAL,
    # Transport
    'TRO': SectorLabel.TRANSPORT,
    'TRO_noRES': SectorLabel.TRANSPORT,
    'TNR': SectorLabel.TRANSPORT,
    'TNR_Aviation_CDS': SectorLabel.TRANSPORT,
    'TNR_Aviation_CRS': SectorLabel.TRANSPORT,
    'TNR_Aviation_LTO': SectorLabel.TRANSPORT,
    'TNR_Aviation_SPS': SectorLabel.TRANSPORT,
    'TNR_Other': SectorLabel.TRANSPORT,
    'TNR_Ship': SectorLabel.TRANSPORT,
    # Agriculture
    'AGS': SectorLabel.AGRICULTURE,
    'AWB': SectorLabel.AGRICULTURE,
    'MNM': SectorLabel.AGRICULTURE,
    'ENF': SectorLabel.AGRICULTURE,
    # Waste
    'SWD_INC': SectorLabel.WASTE,
    'SWD_LDF': SectorLabel.WASTE,
    'WWT': SectorLabel.WASTE,
}


def sector_label(sector: Optional[str], subsector: Optional[str] = None) -> SectorLabel:
    """
    Resolve an inventory sector code to its label.

    An empty sector is the all-sector aggregate and maps to ``Total``.
    Unknown codes map to ``Others``.
    """

    if not sector:
        return SectorLabel.TOTAL

    if subsector:
        combined = SECTOR_LABELS.get(f"{sector}_{subsector}")
        if combined is not None:
            return combined

    return SECTOR_LABELS.get(sector, DEFAULT_SECTOR_LABEL)

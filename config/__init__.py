from .config_loader import Config, SectionProxy, config
from .risk_config import RiskConfig, TrailingTier, load_risk_config

__all__ = ['Config', 'SectionProxy', 'config', 'RiskConfig', 'TrailingTier', 'load_risk_config']

from .feature_flags import FeatureFlags, feature_flags
from .settings import settings

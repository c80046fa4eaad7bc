"""nbody_lbvh: 2-D Barnes-Hut N-body simulation over a linear BVH."""

from importlib.metadata import version as _version_lookup, PackageNotFoundError

# --- Versioning ---
try:
    # This works if the package was installed via 'pip install .'
    __version__ = _version_lookup("nbody-lbvh")
except PackageNotFoundError:
    __version__ = "unknown"

# --- Public API ---

# From .config
from .config import SimConfig, default_config, MAX_BODIES

# From .simulation
from .simulation import Simulation

# From .scenarios
from .scenarios import SCENARIOS, make_scenario

# From .morton / .sort / .lbvh
from .morton import compute_morton_codes
from .sort import sort_by_key_cpu, sort_by_key_gpu
from .lbvh import LBVHTree, build_lbvh, check_tree_topology

# From .forces
from .forces import compute_bh_accelerations, compute_direct_accelerations

# From .run
from .run import run_frames

# From .gpu
from .gpu import get_gpu_info

# Define what "from nbody_lbvh import *" does
__all__ = [
    "__version__",
    "SimConfig",
    "default_config",
    "MAX_BODIES",
    "Simulation",
    "SCENARIOS",
    "make_scenario",
    "compute_morton_codes",
    "sort_by_key_cpu",
    "sort_by_key_gpu",
    "LBVHTree",
    "build_lbvh",
    "check_tree_topology",
    "compute_bh_accelerations",
    "compute_direct_accelerations",
    "run_frames",
    "get_gpu_info",
]

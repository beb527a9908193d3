"""SVAC LVM - Bayesian latent variable estimates of reported conflict-related sexual violence."""

__version__ = "2026.10.19"

from svac_lvm.config import LVMConstants as LVMConstants
from svac_lvm.config import load_constants as load_constants
from svac_lvm.dataset import read_svac_csv as read_svac_csv
from svac_lvm.dataset import write_svac_csv as write_svac_csv

__version__ = "0.1.0"
AUTHOR = "Compute Domain DRA Authors"
NAME = "computedomain-dra"
KEYWORDS = "kubernetes, dra, gpu, imex, compute domain"
DESCRIPTION = "Compute domain controller and kubelet plugin for Kubernetes DRA"
LICENSE = "LICENSE"


################################################################################
# Global requirements

INSTALL_REQUIRES = (
    ("kubernetes", {"min_version": None}),
    ("PyYAML", {"min_version": None}),
    ("grpcio-tools", {"min_version": None}),
    ("grpcio", {"min_version": None}),
    ("pydantic", {"min_version": "2.0"}),
    ("tenacity", {"min_version": None}),
)

TESTS_REQUIRES = (("pytest", {"min_version": None}),)
INSTALL_REQUIRES_ALL = INSTALL_REQUIRES + TESTS_REQUIRES

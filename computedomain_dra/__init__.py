from computedomain_dra.version import __version__

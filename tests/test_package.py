import importlib

def test_import_version():
    m = importlib.import_module("agentgate")
    assert hasattr(m, "__version__")
    assert isinstance(m.__version__, str)
    assert len(m.__version__) >= 5  # ex: 0.1.0

def test_public_modules_import():
    for name in ("agentgate.approvals", "agentgate.planning", "agentgate.audit", "agentgate.web.app", "agentgate.cli"):
        importlib.import_module(name)

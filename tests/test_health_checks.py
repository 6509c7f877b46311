import asyncio

from fakes import make_config
from services.api import health_checks


def test_local_prover_needs_circuit_files(tmp_path):
    cfg = make_config(prover_url="", wasm_path=str(tmp_path / "c.wasm"), zkey_path="", vkey_path="")
    assert health_checks.check_local_prover(cfg)["status"] == "unhealthy"
    for name in ("c.wasm", "c.zkey", "vk.json"):
        (tmp_path / name).write_text("x")
    cfg = make_config(
        prover_url="",
        wasm_path=str(tmp_path / "c.wasm"),
        zkey_path=str(tmp_path / "c.zkey"),
        vkey_path=str(tmp_path / "vk.json"),
    )
    assert health_checks.check_local_prover(cfg) == {"status": "healthy", "mode": "snarkjs"}


def test_overall_status_is_worst_component(monkeypatch):
    async def rpc_ok(url, timeout=5.0):
        return {"status": "healthy", "url": url}

    async def service(name, url, timeout=5.0):
        return {"status": "unhealthy" if name == "relayer" else "healthy", "url": url}

    monkeypatch.setattr(health_checks, "check_rpc_health", rpc_ok)
    monkeypatch.setattr(health_checks, "check_http_service", service)
    report = asyncio.run(health_checks.comprehensive_health_check(make_config(prover_url="http://prover")))
    assert report["status"] == "unhealthy"
    assert set(report["checks"]) == {"rpc", "relayer", "prover"}
    assert report["checks"]["prover"]["status"] == "healthy"
    assert report["timestamp"].endswith("Z")

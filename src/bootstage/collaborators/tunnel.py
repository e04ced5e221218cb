# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/collaborators/tunnel.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import paramiko

from bootstage.errors import CommandError, PermanentExternalFailure, TrustedKeyMissing
from bootstage.utils.runner import CommandRunner
from bootstage.utils.templates import TemplateRenderer
from .interface import TunnelParams, TunnelResult

log = logging.getLogger("bootstage")


class SshTunnelProvisioner:
    """
    Reverse SSH tunnel to the monitoring server:
      - a dedicated RSA key (reused when present)
      - a systemd unit running ``ssh -N -R``

    The unit is enabled but not started; the public key still has to be
    authorized on the remote side.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        renderer: Optional[TemplateRenderer] = None,
        *,
        unit_dir: Path = Path("/etc/systemd/system"),
    ):
        self.runner = runner or CommandRunner(label="tunnel")
        self.renderer = renderer or TemplateRenderer()
        self.unit_dir = Path(unit_dir)

    # ------------------ key ------------------

    def _load_key(self, key_path: Path) -> paramiko.PKey:
        for key_cls in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
            try:
                return key_cls.from_private_key_file(str(key_path))
            except paramiko.SSHException:
                continue
        raise PermanentExternalFailure(f"Unsupported private key format for {key_path}")

    def ensure_key(self, params: TunnelParams, *, key_expected: bool = False) -> tuple[bool, str]:
        key_path = Path(params.key_path)
        pub_path = key_path.with_name(key_path.name + ".pub")

        if key_path.exists():
            key = self._load_key(key_path)
            generated = False
        elif key_expected:
            raise TrustedKeyMissing(
                f"tunnel key {key_path} is missing but the remote side already trusts it; restore the key"
            )
        else:
            log.info("Generating SSH key for tunnel: %s", key_path)
            key_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            key = paramiko.RSAKey.generate(params.key_bits)
            key.write_private_key_file(str(key_path))
            generated = True

        os.chmod(key_path, 0o600)
        public = f"{key.get_name()} {key.get_base64()} {params.key_comment}"
        if generated or not pub_path.exists():
            pub_path.write_text(public + "\n", encoding="utf-8")
            os.chmod(pub_path, 0o644)
        return generated, public

    # ------------------ unit ------------------

    def render_unit(self, params: TunnelParams) -> str:
        return self.renderer.render(
            "tunnel.service.j2",
            {
                "host": params.host,
                "user": params.user,
                "ssh_port": params.ssh_port,
                "key_path": str(params.key_path),
                "remote_port": params.remote_port,
                "local_port": params.local_port,
            },
        )

    def ensure_service(self, params: TunnelParams) -> bool:
        unit_path = self.unit_dir / f"{params.service_name}.service"
        content = self.render_unit(params)
        if unit_path.exists() and unit_path.read_text(encoding="utf-8") == content:
            return False

        self.unit_dir.mkdir(parents=True, exist_ok=True)
        unit_path.write_text(content, encoding="utf-8")
        try:
            self.runner.run(["systemctl", "daemon-reload"], timeout=120)
            self.runner.run(["systemctl", "enable", params.service_name], timeout=120)
        except CommandError as exc:
            raise PermanentExternalFailure(str(exc)) from exc
        log.info("SSH tunnel service %s created (requires remote key authorization)", params.service_name)
        return True

    def ensure_key_and_service(
        self,
        params: TunnelParams,
        *,
        key_expected: bool = False,
        service_installed: bool = False,
    ) -> TunnelResult:
        generated, public = self.ensure_key(params, key_expected=key_expected)
        changed = False if service_installed else self.ensure_service(params)
        return TunnelResult(key_generated=generated, service_changed=changed, public_key=public)

    def is_active(self, service_name: str) -> bool:
        r = self.runner.run(["systemctl", "is-active", "--quiet", service_name], check=False, mutating=False)
        return r.returncode == 0

"""Setup wizard page and script served by the setup service."""

SETUP_HTML = """<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>Moltbot Setup</title>
  <style>
    body { font-family: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, Helvetica, Arial; margin: 2rem; max-width: 900px; }
    .card { border: 1px solid #ddd; border-radius: 12px; padding: 1.25rem; margin: 1rem 0; }
    label { display:block; margin-top: 0.75rem; font-weight: 600; }
    input, select { width: 100%; padding: 0.6rem; margin-top: 0.25rem; }
    button { padding: 0.8rem 1.2rem; border-radius: 10px; border: 0; background: #111; color: #fff; font-weight: 700; cursor: pointer; }
    code { background: #f6f6f6; padding: 0.1rem 0.3rem; border-radius: 6px; }
    .muted { color: #555; }
    .info-box { background: #f0f9ff; border: 1px solid #0ea5e9; border-radius: 8px; padding: 1rem; margin: 1rem 0; }
  </style>
</head>
<body>
  <h1>Moltbot Setup</h1>
  <p class="muted">This wizard configures Moltbot. Config is stored in S3 and synced to the Gateway service.</p>

  <div class="info-box">
    <strong>S3-Backed Storage:</strong> Config persists in object storage. The gateway polls for changes.
  </div>

  <div class="card">
    <h2>Status</h2>
    <div id="status">Loading...</div>
    <div style="margin-top: 0.75rem">
      <a href="/moltbot" target="_blank">Open Moltbot UI</a>
      &nbsp;|&nbsp;
      <a href="/setup/export" target="_blank">Download backup (.tar.gz)</a>
    </div>
  </div>

  <div class="card">
    <h2>1) Model/auth provider</h2>
    <label>Provider group</label>
    <select id="authGroup"></select>
    <label>Auth method</label>
    <select id="authChoice"></select>
    <label>Key / Token (if required)</label>
    <input id="authSecret" type="password" placeholder="Paste API key / token if applicable" />
    <label>Wizard flow</label>
    <select id="flow">
      <option value="quickstart">quickstart</option>
      <option value="advanced">advanced</option>
      <option value="manual">manual</option>
    </select>
  </div>

  <div class="card">
    <h2>2) Optional: Channels</h2>
    <label>Telegram bot token (optional)</label>
    <input id="telegramToken" type="password" placeholder="123456:ABC..." />
    <label>Discord bot token (optional)</label>
    <input id="discordToken" type="password" placeholder="Bot token" />
    <label>Slack bot token (optional)</label>
    <input id="slackBotToken" type="password" placeholder="xoxb-..." />
    <label>Slack app token (optional)</label>
    <input id="slackAppToken" type="password" placeholder="xapp-..." />
  </div>

  <div class="card">
    <h2>3) Run onboarding</h2>
    <button id="run">Run setup</button>
    <button id="pairingApprove" style="background:#1f2937; margin-left:0.5rem">Approve pairing</button>
    <button id="reset" style="background:#444; margin-left:0.5rem">Reset setup</button>
    <pre id="log" style="white-space:pre-wrap"></pre>
  </div>

  <script src="/setup/app.js"></script>
</body>
</html>
"""

SETUP_JS = """(function () {
  const $ = (id) => document.getElementById(id);
  const log = (text) => { $("log").textContent += text; };
  let groups = [];

  function renderChoices() {
    const group = groups.find((g) => g.value === $("authGroup").value) || { options: [] };
    $("authChoice").innerHTML = group.options
      .map((o) => `<option value="${o.value}">${o.label}</option>`).join("");
  }

  async function refreshStatus() {
    const res = await fetch("/setup/api/status", { credentials: "same-origin" });
    const data = await res.json();
    groups = data.authGroups || [];
    $("authGroup").innerHTML = groups
      .map((g) => `<option value="${g.value}">${g.label} (${g.hint})</option>`).join("");
    renderChoices();
    $("status").textContent =
      `configured: ${data.configured} | gateway: ${data.gatewayStatus} | version: ${data.moltbotVersion || "unknown"}`;
  }

  $("authGroup").addEventListener("change", renderChoices);

  $("run").addEventListener("click", async () => {
    $("log").textContent = "Running onboarding...\\n";
    const payload = {
      flow: $("flow").value,
      authChoice: $("authChoice").value,
      authSecret: $("authSecret").value,
      telegramToken: $("telegramToken").value,
      discordToken: $("discordToken").value,
      slackBotToken: $("slackBotToken").value,
      slackAppToken: $("slackAppToken").value,
    };
    const res = await fetch("/setup/api/run", {
      method: "POST",
      credentials: "same-origin",
      headers: { "content-type": "application/json" },
      body: JSON.stringify(payload),
    });
    const data = await res.json().catch(() => ({ output: "(no response body)" }));
    log(data.output || JSON.stringify(data));
    await refreshStatus();
  });

  $("pairingApprove").addEventListener("click", async () => {
    const channel = prompt("Channel (telegram, discord, slack):");
    const code = channel && prompt("Pairing code:");
    if (!channel || !code) return;
    const res = await fetch("/setup/api/pairing/approve", {
      method: "POST",
      credentials: "same-origin",
      headers: { "content-type": "application/json" },
      body: JSON.stringify({ channel, code }),
    });
    const data = await res.json();
    log(`\\n[pairing] ${data.output || data.error || ""}\\n`);
  });

  $("reset").addEventListener("click", async () => {
    if (!confirm("Delete the current config locally and from S3?")) return;
    const res = await fetch("/setup/api/reset", { method: "POST", credentials: "same-origin" });
    log(`\\n${await res.text()}\\n`);
    await refreshStatus();
  });

  refreshStatus().catch((err) => { $("status").textContent = `Error: ${err}`; });
})();
"""

"""
Operator alerting for cl-fee-tiers

Every alert is written to the lightningd log. When a Slack incoming
webhook is configured the alert is also posted there, from a daemon
thread so a slow webhook never stalls a sync cycle or a hook.
"""

import json
import threading
import urllib.error
import urllib.request


# Alert level -> plugin.log level
_LOG_LEVELS = {
    'debug': 'debug',
    'info': 'info',
    'warn': 'warn',
    'warning': 'warn',
    'error': 'error',
}


class PluginNotifier:
    """
    Notifier that logs through the plugin and optionally posts to Slack.

    alert() never raises.
    """

    def __init__(self, plugin, slack_webhook_url: str = '', timeout: int = 10):
        self.plugin = plugin
        self.slack_webhook_url = slack_webhook_url
        self.timeout = timeout

    def alert(self, level: str, topic: str, message: str) -> None:
        log_level = _LOG_LEVELS.get(str(level).lower(), 'info')
        self.plugin.log(f"[{topic}] {message}", level=log_level)

        if not self.slack_webhook_url:
            return
        threading.Thread(
            target=self._post_slack,
            args=(level, topic, message),
            daemon=True,
            name="slack-alert"
        ).start()

    def _post_slack(self, level: str, topic: str, message: str) -> None:
        payload = json.dumps({"text": f"[{str(level).upper()}] {topic}: {message}"}).encode('utf-8')
        req = urllib.request.Request(
            self.slack_webhook_url,
            data=payload,
            headers={
                'Content-Type': 'application/json',
                'User-Agent': 'cl-fee-tiers/1.0'
            },
            method='POST'
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                if response.status >= 400:
                    self.plugin.log(f"Slack webhook returned {response.status}", level='warn')
        except urllib.error.HTTPError as e:
            self.plugin.log(f"Slack webhook HTTP error {e.code}", level='warn')
        except (urllib.error.URLError, OSError) as e:
            self.plugin.log(f"Slack webhook error: {e}", level='warn')

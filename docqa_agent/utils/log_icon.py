icon = {
    "running": "🚀",
    "check": "✅",
    "cross": "❌",
    "warning": "⚠️",
    "human": "🙋",
    "retry": "🔁",
    "skip": "⏭️",
}

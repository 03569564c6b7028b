"""Display names and formatting for apps on the child device."""

KNOWN_APP_NAMES = {
    "com.burbn.instagram": "Instagram",
    "com.zhiliaoapp.musically": "TikTok",
    "com.google.ios.youtube": "YouTube",
    "com.apple.mobilesafari": "Safari",
    "com.apple.MobileSMS": "Messages",
    "com.toyopagroup.picaboo": "Snapchat",
    "com.whatsapp.WhatsApp": "WhatsApp",
    "com.facebook.Facebook": "Facebook",
    "com.twitter.ios": "Twitter",
    "com.hammerandchisel.discord": "Discord",
    "com.reddit.Reddit": "Reddit",
    "com.netflix.Netflix": "Netflix",
    "com.spotify.client": "Spotify",
    "com.mojang.minecraftpe": "Minecraft",
    "com.roblox.client": "Roblox",
    "com.epicgames.fortnite": "Fortnite",
    "com.activision.callofduty.shooter": "Call of Duty",
    "com.tencent.ig": "PUBG",
    "com.mihoyo.genshinimpact": "Genshin Impact",
    "com.innersloth.spacemafia": "Among Us",
}


def app_display_name(bundle_id: str, reported_name: str | None = None) -> str:
    """Best human-readable name for a bundle id."""
    if reported_name:
        return reported_name
    if bundle_id in KNOWN_APP_NAMES:
        return KNOWN_APP_NAMES[bundle_id]
    return bundle_id.rsplit(".", 1)[-1] or bundle_id


def format_duration(seconds: float) -> str:
    """Format a duration as "1h 5m" or "5m"."""
    total_minutes = int(seconds) // 60
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"

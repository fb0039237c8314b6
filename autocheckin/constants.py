# autocheckin/constants.py
from typing import Dict, List, Tuple

# === Application Version ===
SCRIPT_VERSION = "2.0.0"

# === Constants Definition ===
class AppConstants:
    APP_NAME: str = "AutoCheckin"
    LOG_DIR: str = "logs" # 日志目录，相对于当前工作目录
    CONFIG_FILE: str = "config.json" # 主配置文件名
    LOGIN_QR_FILE: str = "login_qr.png" # CLI 扫码登录时二维码图片的保存位置

    # --- k8n.cn 平台 ---
    BASE_K8N_URL: str = "http://k8n.cn"
    QR_LOGIN_PAGE_URL: str = "http://k8n.cn/weixin/qrlogin/student"
    STUDENT_DASHBOARD_URL: str = "http://k8n.cn/student"
    QR_IMAGE_URL_PATTERN: str = r"https://mp.weixin.qq.com/cgi-bin/showqrcode\?ticket=[a-zA-Z0-9_\-=@%]+"
    SIGN_ID_PATTERNS: Tuple[str, ...] = (
        r"punchcard_(\d+)",
        r"punch_pwd_frm_(\d+)",
        r"punch_gps\((\d+)\)",
    )
    QR_IMAGE_SIZE: Tuple[int, int] = (280, 280)

    USER_AGENT_TEMPLATE: str = (
        "Mozilla/5.0 (Linux; Android {android_version}; {device} Build/{build_number}; wv) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Version/4.0 Chrome/{chrome_version} Mobile Safari/537.36 "
        "MicroMessenger/{wechat_version} NetType/{net_type} Language/zh_CN"
    )
    USER_AGENT_POOL: Dict[str, List[str]] = {
        "android_versions": ["12", "13", "14"],
        "devices": ["PAL-AL00", "Pixel 7 Pro", "SM-S9180", "V2227A"],
        "build_numbers": ["HUAWEIPAL-AL00", "TQ3A.230705.001", "UP1A.231005.007"],
        "chrome_versions": ["116.0.0.0", "120.0.6099.40", "124.0.6367.113"],
        "wechat_versions": ["8.0.47.2560(0x28002F35)", "8.0.48.2580(0x28003036)", "8.0.49.2600(0x28003133)"],
        "net_types": ["WIFI", "4G", "5G"],
    }
    # 登录页使用桌面浏览器 UA，与网页扫码场景一致
    DESKTOP_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0"
    )

    # --- 网络超时（秒） ---
    HTTP_TIMEOUT_SECONDS: float = 15.0
    LOGIN_POLL_TIMEOUT_SECONDS: float = 5.0
    WECOM_TIMEOUT_SECONDS: float = 10.0

    # --- 位置 ---
    DEFAULT_ACCURACY: str = "20.0" # 默认精度（米）
    EARTH_RADIUS_METERS: float = 6371000.0 # 地球半径（米），用于偏移计算
    COORDINATE_DECIMAL_PLACES: int = 6
    MIN_ACCURACY_METERS: int = 1 # 偏移半径下限（米），低于此值坐标无法随机化

    # --- 调度与重试默认值 ---
    DEFAULT_TICK_INTERVAL_SECONDS: int = 30
    DEFAULT_MAX_ATTEMPTS: int = 3
    DEFAULT_BASE_DELAY_SECONDS: float = 2.0
    DEFAULT_MIN_SUBMIT_DELAY_SECONDS: float = 1.0
    DEFAULT_MAX_SUBMIT_DELAY_SECONDS: float = 5.0
    DEFAULT_MAX_WORKERS: int = 4

    # --- 扫码登录 ---
    LOGIN_SESSION_MAX_AGE_SECONDS: int = 120
    LOGIN_POLL_INTERVAL_SECONDS: int = 2

    # --- 企业微信 ---
    WECOM_TOKEN_URL: str = "https://qyapi.weixin.qq.com/cgi-bin/gettoken"
    WECOM_SEND_URL: str = "https://qyapi.weixin.qq.com/cgi-bin/message/send"
    WECOM_DEFAULT_RECIPIENT: str = "@all"
    # invalid access_token / access_token expired / invalid credential
    WECOM_TOKEN_REJECTED_CODES: Tuple[int, ...] = (40014, 42001, 40001)
    WECOM_TOKEN_EXPIRY_MARGIN_SECONDS: int = 300
    NOTIFICATION_SEPARATOR: str = "----------------"

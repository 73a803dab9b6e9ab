"""Configuration constants for ringback application."""

DEFAULT_LANGUAGE = 'es'
NATIVE_LANGUAGE = 'en'   # Learner's native language, used for fallback

# Struggling word tiers
MAX_SEVERITY = 3         # Severity assigned to a never-seen word

# Modified SM-2 scheduling
BASE_EASE = 2.5
PERFECT_QUALITY = 5
PROFICIENT_MIN_INTERVAL = 1.0    # days, floor when a word becomes proficient
STRUGGLING_MIN_INTERVAL = 0.5    # days, floor while a word is still struggling
STRUGGLING_ACCELERATION = 3.0    # struggling words are reviewed 3x as often
FIRST_TOUCH_INTERVAL = 1.0 / 3.0  # days, first review for a brand new word

# Fallback to native language
FALLBACK_THRESHOLD = 2   # consecutive misunderstandings before escalating
FALLBACK_STICKY = True   # once escalated, a successful turn does not reset
FALLBACK_RESUME_DELAY = 2.0  # seconds to pause after a native-language clarification

# Conversation turn loop
LISTEN_WINDOW_SECONDS = 3.0  # fixed capture window per turn
HISTORY_WINDOW = 20          # max (speaker, text) entries kept per session
REVIEW_WORDS_IN_PROMPT = 5   # due words offered to the generator per turn
SECONDS_PER_SPOKEN_WORD = 0.4

DEFAULT_PERSONALITY = 'friendly and curious'
GENERIC_GREETING = 'Hey there! Good to hear from you.'
CLARIFY_TARGET = "I didn't catch that. Did you mean 'yes' or 'no'?"
CLARIFY_NATIVE = 'Let me repeat in your language. How are you?'

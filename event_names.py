# client -> server
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
SEND_MESSAGE = "send-message"
START_VIDEO_CALL = "start-video-call"
END_VIDEO_CALL = "end-video-call"

# server -> client
CONNECTED = "connected"  # connection id assigned on accept
ROOM_JOINED = "room-joined"  # joining connection only
USER_JOINED = "user-joined"  # room, joiner excluded
USER_LEFT = "user-left"  # room
NEW_MESSAGE = "new-message"  # room, sender included
VIDEO_CALL_STARTED = "video-call-started"  # room, sender excluded
VIDEO_CALL_ENDED = "video-call-ended"  # room, sender excluded
ERROR = "error"  # offending connection only

# directed, both ways; payload relayed verbatim and tagged with fromUserId
WEBRTC_OFFER = "webrtc-offer"
WEBRTC_ANSWER = "webrtc-answer"
WEBRTC_ICE_CANDIDATE = "webrtc-ice-candidate"

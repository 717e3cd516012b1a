PRESENCE_USER_KEY = "presence:user:{user_id}" # user id - set of connection IDs
ONLINE_USERS_KEY = "presence:online" # set of user IDs with at least one live connection
ROOM_MEMBERS_KEY = "room:members:{room_id}" # room id - set of user IDs occupying the room
ROOM_USER_CONNS_KEY = "room:conns:{room_id}:{user_id}" # room id + user id - set of connection IDs subscribed
ROOM_MESSAGES_KEY = "room:messages:{room_id}" # room id - list of recent messages, newest first
RATE_KEY = "rate:{user_id}:{action}" # user id + action - fixed window counter
USER_NOTIFICATIONS_KEY = "notifications:user:{user_id}" # user id - list of notifications, newest first

# **Example `presence:online` set**
# - `{userId}` for each user whose `presence:user:{userId}` set is non-empty
#   (members whose set has expired are pruned when the set is read)
#
# **Example `room:members:{id}` set**
# - `{userId}` for each user with at least one subscribed connection
#
# **Example `room:conns:{roomId}:{userId}` set**
# - `{connectionId}` for each of that user's connections subscribed to the room
#   (the room member is removed only when this set becomes empty)

friendships_sql = """
CREATE TYPE friendships_status AS ENUM ('pending', 'accepted', 'rejected', 'blocked');

CREATE TABLE friendships (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,

    -- user_1_id is the requester, user_2_id the receiver
    user_1_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    user_2_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,

    status friendships_status NOT NULL DEFAULT 'pending',

    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),

    CONSTRAINT prevent_self_request CHECK (user_1_id <> user_2_id)
);

-- At most one active (pending/accepted) edge per unordered pair.
CREATE UNIQUE INDEX unique_active_friend_pair
    ON friendships (LEAST(user_1_id, user_2_id), GREATEST(user_1_id, user_2_id))
    WHERE status IN ('pending', 'accepted');
"""

user_profile_sql = """
CREATE TABLE user_profile (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    user_id UUID UNIQUE REFERENCES auth.users(id) ON DELETE CASCADE,
    username TEXT NOT NULL,
    mileage INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""
